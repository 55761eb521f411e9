"""Typed webhook events parsed from processor notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from core.clock import from_unix
from services.billing_errors import InvalidInputError


def _str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, Mapping):
        # Expanded objects carry their id.
        return _str(value.get("id"))
    return None


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _metadata_account_id(*sources: Any) -> Optional[str]:
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        account_id = _str(source.get("account_id")) or _str(source.get("userId"))
        if account_id:
            return account_id
    return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Processor view of a subscription."""

    subscription_id: str
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    account_id: Optional[str] = None
    is_paused: bool = False


@dataclass(frozen=True)
class InvoiceSnapshot:
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_due: int
    amount_paid: int
    currency: str
    status: Optional[str]
    paid_at: Optional[datetime]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    price_id: Optional[str]
    attempt_count: int = 0
    account_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCompleted:
    session_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    account_id: Optional[str]
    payment_status: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class InvoicePaymentFailed:
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted:
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class TrialWillEnd:
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


EventPayload = Union[
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    UnhandledEvent,
]


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    created: Optional[datetime]
    livemode: bool
    payload: EventPayload
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def parse_subscription(obj: Mapping[str, Any]) -> SubscriptionSnapshot:
    subscription_id = _str(obj.get("id"))
    if not subscription_id:
        raise InvalidInputError("Subscription object is missing an id.")

    items = ((obj.get("items") or {}).get("data")) or []
    first_item: Mapping[str, Any] = items[0] if items and isinstance(items[0], Mapping) else {}
    price = first_item.get("price") or first_item.get("plan") or {}

    # Newer API versions report the billing period on the item.
    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        customer_id=_str(obj.get("customer")),
        status=_str(obj.get("status")),
        price_id=_str(price),
        current_period_start=from_unix(period_start),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=from_unix(obj.get("canceled_at")),
        trial_start=from_unix(obj.get("trial_start")),
        trial_end=from_unix(obj.get("trial_end")),
        account_id=_metadata_account_id(obj.get("metadata")),
        is_paused=bool(obj.get("pause_collection")),
    )


def parse_invoice(obj: Mapping[str, Any]) -> InvoiceSnapshot:
    invoice_id = _str(obj.get("id"))
    if not invoice_id:
        raise InvalidInputError("Invoice object is missing an id.")

    lines = ((obj.get("lines") or {}).get("data")) or []
    first_line: Mapping[str, Any] = lines[0] if lines and isinstance(lines[0], Mapping) else {}
    period = first_line.get("period") or {}
    price = first_line.get("price") or ((first_line.get("pricing") or {}).get("price_details") or {}).get("price")

    subscription_id = _str(obj.get("subscription"))
    parent = obj.get("parent") or {}
    subscription_details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if not subscription_id and isinstance(subscription_details, Mapping):
        subscription_id = _str(subscription_details.get("subscription"))

    details_metadata = subscription_details.get("metadata") if isinstance(subscription_details, Mapping) else None
    legacy_details = obj.get("subscription_details")
    legacy_metadata = legacy_details.get("metadata") if isinstance(legacy_details, Mapping) else None
    transitions = obj.get("status_transitions") or {}
    return InvoiceSnapshot(
        invoice_id=invoice_id,
        customer_id=_str(obj.get("customer")),
        subscription_id=subscription_id,
        amount_due=_int(obj.get("amount_due")),
        amount_paid=_int(obj.get("amount_paid")),
        currency=(_str(obj.get("currency")) or "usd").lower(),
        status=_str(obj.get("status")),
        paid_at=from_unix(transitions.get("paid_at")),
        period_start=from_unix(period.get("start")),
        period_end=from_unix(period.get("end")),
        price_id=_str(price),
        attempt_count=_int(obj.get("attempt_count")),
        account_id=_metadata_account_id(details_metadata, legacy_metadata, obj.get("metadata")),
    )


def parse_checkout_session(obj: Mapping[str, Any]) -> CheckoutCompleted:
    session_id = _str(obj.get("id"))
    if not session_id:
        raise InvalidInputError("Checkout session is missing an id.")
    return CheckoutCompleted(
        session_id=session_id,
        customer_id=_str(obj.get("customer")),
        subscription_id=_str(obj.get("subscription")),
        account_id=_metadata_account_id(obj.get("metadata")) or _str(obj.get("client_reference_id")),
        payment_status=_str(obj.get("payment_status")),
    )


def _parse_payload(event_type: str, obj: Mapping[str, Any]) -> EventPayload:
    if event_type == "checkout.session.completed":
        return parse_checkout_session(obj)
    if event_type in ("invoice.paid", "invoice.payment_succeeded"):
        return InvoicePaid(parse_invoice(obj))
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(parse_invoice(obj))
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionChanged(parse_subscription(obj))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(parse_subscription(obj))
    if event_type == "customer.subscription.trial_will_end":
        return TrialWillEnd(parse_subscription(obj))
    return UnhandledEvent(event_type)


def parse_event(raw: Mapping[str, Any]) -> WebhookEvent:
    """Build a typed event from a decoded notification body."""
    event_id = _str(raw.get("id"))
    event_type = _str(raw.get("type"))
    if not event_id or not event_type:
        raise InvalidInputError("Webhook event is missing its id or type.")
    data = raw.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        obj = {}
    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        created=from_unix(raw.get("created")),
        livemode=bool(raw.get("livemode")),
        payload=_parse_payload(event_type, obj),
        raw=dict(raw),
    )


__all__ = [
    "CheckoutCompleted",
    "EventPayload",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "InvoiceSnapshot",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "SubscriptionSnapshot",
    "TrialWillEnd",
    "UnhandledEvent",
    "WebhookEvent",
    "parse_checkout_session",
    "parse_event",
    "parse_invoice",
    "parse_subscription",
]
