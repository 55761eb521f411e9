"""Hosted checkout: session creation and post-payment verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from core.clock import from_unix, utcnow
from core.plan_constants import BillingSource, SubscriptionStatus
from models.subscription import SubscriptionRecord
from services import account_service, notification_service, subscription_store
from services.billing_errors import ExternalServiceError, InvalidInputError
from services.payments.stripe_gateway import StripeGateway, get_payment_gateway
from services.payments.webhook_events import parse_subscription
from services.plan_catalog_service import PlanCatalog, PriceMatch, load_plan_catalog
from services.retry_scheduler import RetryScheduler, get_retry_scheduler
from services.subscription_state import activation_changes, ensure_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]


@dataclass(frozen=True)
class CheckoutVerification:
    success: bool
    record: Optional[SubscriptionRecord] = None
    payment_status: Optional[str] = None
    message: Optional[str] = None


def ensure_processor_customer(db: Session, account_id: str, gateway: StripeGateway) -> str:
    """Return the account's processor customer id, creating the customer on first use."""
    account = account_service.get_account(db, account_id)
    if account.processor_customer_id:
        return account.processor_customer_id
    customer = gateway.create_customer(
        email=account.email,
        name=account.full_name,
        metadata={"account_id": account_id},
        idempotency_key=f"customer-{account_id}",
    )
    customer_id = customer.get("id")
    if not isinstance(customer_id, str) or not customer_id:
        raise ExternalServiceError("Payment processor did not return a customer id.")
    winner = account_service.claim_processor_customer_id(db, account_id, customer_id)
    subscription_store.commit(db, context=f"customer id for {account_id}")
    return winner


def _line_item_price(session: Mapping[str, Any]) -> Optional[str]:
    items = ((session.get("line_items") or {}).get("data")) or []
    if items and isinstance(items[0], Mapping):
        price = items[0].get("price")
        if isinstance(price, Mapping):
            return price.get("id")
        if isinstance(price, str):
            return price
    return None


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


class CheckoutService:
    def __init__(
        self,
        *,
        gateway_factory: Optional[Callable[[], StripeGateway]] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        notifier: Optional[notification_service.Notifier] = None,
        catalog: Optional[PlanCatalog] = None,
    ) -> None:
        self._gateway_factory = gateway_factory or get_payment_gateway
        self._retry_scheduler = retry_scheduler
        self._notifier = notifier or notification_service.notify_account
        self._catalog = catalog

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog or load_plan_catalog()

    @property
    def retry_scheduler(self) -> RetryScheduler:
        return self._retry_scheduler or get_retry_scheduler()

    def _match_price(self, price_id: Optional[str]) -> PriceMatch:
        match = self.catalog.match_price(price_id)
        if match is None or not match.plan.is_paid or not match.plan.is_available:
            raise InvalidInputError(f"Unknown price id '{price_id}'.", code="billing.invalid_price")
        return match

    def create_checkout(
        self,
        db: Session,
        account_id: str,
        *,
        price_id: str,
        is_yearly: bool,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        match = self._match_price(price_id)
        if match.is_yearly != is_yearly:
            raise InvalidInputError(
                "The price id does not match the requested billing interval.",
                code="billing.interval_mismatch",
            )
        gateway = self._gateway_factory()
        customer_id = ensure_processor_customer(db, account_id, gateway)
        session = gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"account_id": account_id, "plan_id": match.plan.id, "is_yearly": str(is_yearly).lower()},
        )
        session_id = session.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ExternalServiceError("Payment processor did not return a checkout session id.")
        logger.info("Created checkout session %s for account=%s plan=%s.", session_id, account_id, match.plan.id)
        return CheckoutSession(session_id=session_id, url=session.get("url"))

    def verify_checkout(self, db: Session, account_id: str, session_id: str) -> CheckoutVerification:
        """Apply a paid checkout session; unpaid sessions leave all state untouched."""
        gateway = self._gateway_factory()
        session = gateway.retrieve_checkout_session(session_id)
        payment_status = session.get("payment_status")
        if payment_status != "paid":
            logger.info("Checkout %s not paid yet (status=%s).", session_id, payment_status)
            return CheckoutVerification(success=False, payment_status=payment_status, message="Payment not completed.")

        owner = (session.get("metadata") or {}).get("account_id") or session.get("client_reference_id")
        if owner and owner != account_id:
            raise InvalidInputError("Checkout session belongs to another account.", code="billing.session_mismatch")

        subscription_obj = session.get("subscription")
        subscription = parse_subscription(subscription_obj) if isinstance(subscription_obj, Mapping) else None
        price_id = _line_item_price(session) or (subscription.price_id if subscription is not None else None)
        match = self._match_price(price_id)
        subscription_id = subscription.subscription_id if subscription is not None else _object_id(subscription_obj)
        customer_id = _object_id(session.get("customer"))
        now = utcnow()

        record = subscription_store.get_record(db, account_id)
        already_applied = (
            record is not None
            and subscription_id is not None
            and record.processor_subscription_id == subscription_id
            and record.status == SubscriptionStatus.ACTIVE.value
            and record.tier == match.plan.tier.value
        )
        if not already_applied:
            if record is not None and record.status != SubscriptionStatus.ACTIVE.value:
                ensure_transition(record.status, SubscriptionStatus.ACTIVE)
            period_start = (subscription.current_period_start if subscription is not None else None) or now
            period_end = subscription.current_period_end if subscription is not None else None
            record = subscription_store.upsert_record(
                db,
                account_id,
                activation_changes(
                    tier=match.plan.tier,
                    is_yearly=match.is_yearly,
                    period_start=period_start,
                    period_end=period_end,
                    source=BillingSource.CARD,
                    subscription_id=subscription_id,
                    customer_id=customer_id,
                ),
                now=now,
            )
        if customer_id:
            account_service.claim_processor_customer_id(db, account_id, customer_id)

        invoice_id = _object_id(session.get("invoice")) or f"checkout:{session_id}"
        amount = int(session.get("amount_total") or 0)
        created = subscription_store.record_invoice(
            db,
            account_id=account_id,
            external_invoice_id=invoice_id,
            amount=amount,
            amount_paid=amount,
            currency=(session.get("currency") or "usd").lower(),
            status="paid",
            paid_at=from_unix(session.get("created")) or now,
            processor_subscription_id=subscription_id,
            period_start=record.current_period_start,
            period_end=record.current_period_end,
        )
        subscription_store.commit(db, context=f"verify checkout {session_id}")

        self.retry_scheduler.reset(customer_id or record.processor_customer_id)
        if not already_applied:
            logger.info("Checkout %s activated %s for account=%s.", session_id, match.plan.tier.value, account_id)
            self._notifier(
                account_id,
                notification_service.KIND_ACTIVATED,
                "Subscription active",
                f"Welcome to {match.plan.name}!",
                {"tier": match.plan.tier.value, "invoiceCreated": created},
            )
        return CheckoutVerification(success=True, record=record, payment_status=payment_status)


checkout_service = CheckoutService()

__all__ = [
    "CheckoutService",
    "CheckoutSession",
    "CheckoutVerification",
    "checkout_service",
    "ensure_processor_customer",
]
