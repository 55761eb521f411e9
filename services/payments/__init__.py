"""Payments service helpers."""

from .stripe_gateway import StripeGateway, get_payment_gateway, verify_stripe_signature
from .state_store import BillingStateStore, get_state_store

__all__ = [
    "BillingStateStore",
    "StripeGateway",
    "get_payment_gateway",
    "get_state_store",
    "verify_stripe_signature",
]
