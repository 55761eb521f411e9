"""User-initiated subscription operations.

Processor calls run first and the local record is written only once the
processor has accepted the change; processor failures surface to the caller
as :class:`ExternalServiceError` without touching local state.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from core.billing_settings import get_billing_settings
from core.clock import utcnow
from core.plan_constants import ENTITLED_STATUSES, PlanTier, SubscriptionStatus
from models.subscription import Invoice, PaymentMethod, SubscriptionRecord
from services import account_service, notification_service, subscription_store
from services.billing_errors import ConflictError, ExternalServiceError, InvalidInputError, NotFoundError
from services.checkout_service import ensure_processor_customer
from services.payments.stripe_gateway import StripeGateway, get_payment_gateway
from services.payments.webhook_events import parse_subscription
from services.plan_catalog_service import Plan, PlanCatalog, load_plan_catalog
from services.retry_scheduler import RetryScheduler, get_retry_scheduler
from services.subscription_state import (
    cancellation_changes,
    default_period_end,
    ensure_transition,
    is_entitled,
    resume_changes,
    scheduled_cancel_changes,
    tier_changes,
    trial_changes,
)
from services.subscription_sync import sync_from_processor

logger = logging.getLogger(__name__)

_ENTITLED_VALUES = [status.value for status in ENTITLED_STATUSES]


def _require_live(record: Optional[SubscriptionRecord]) -> SubscriptionRecord:
    if record is None or not is_entitled(record.status, record.tier):
        raise ConflictError("No active subscription.", code="billing.no_active_subscription")
    return record


def _reject_iap(record: SubscriptionRecord) -> None:
    if subscription_store.is_iap_record(record):
        raise InvalidInputError(
            "This subscription is billed through an app store; manage it there.",
            code="billing.iap_managed",
        )


def _require_processor_managed(record: SubscriptionRecord) -> str:
    _reject_iap(record)
    if not record.processor_subscription_id:
        raise ConflictError(
            "This subscription has no processor billing; start a checkout instead.",
            code="billing.no_processor_subscription",
        )
    return record.processor_subscription_id


def _card_details(payload: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[int], Optional[int]]:
    card = payload.get("card") or {}
    if not isinstance(card, Mapping):
        return None, None, None, None
    return card.get("brand"), card.get("last4"), card.get("exp_month"), card.get("exp_year")


class SubscriptionService:
    def __init__(
        self,
        *,
        gateway_factory: Optional[Callable[[], StripeGateway]] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        notifier: Optional[notification_service.Notifier] = None,
        catalog: Optional[PlanCatalog] = None,
        trial_days: Optional[int] = None,
    ) -> None:
        self._gateway_factory = gateway_factory or get_payment_gateway
        self._retry_scheduler = retry_scheduler
        self._notifier = notifier or notification_service.notify_account
        self._catalog = catalog
        self._trial_days = trial_days

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog or load_plan_catalog()

    @property
    def retry_scheduler(self) -> RetryScheduler:
        return self._retry_scheduler or get_retry_scheduler()

    # Queries -----------------------------------------------------------

    def get_plans(self) -> List[Plan]:
        return self.catalog.plans()

    def get_current(self, db: Session, account_id: str) -> Optional[SubscriptionRecord]:
        return subscription_store.get_record(db, account_id)

    def list_invoices(self, db: Session, account_id: str, *, page: int = 1, limit: int = 10) -> Tuple[List[Invoice], bool]:
        return subscription_store.list_invoices(db, account_id, page=page, limit=limit)

    # Plan changes ------------------------------------------------------

    def change_plan(self, db: Session, account_id: str, *, price_id: str, is_yearly: bool) -> SubscriptionRecord:
        """Move a live card subscription to another price; entitlements change immediately."""
        match = self.catalog.match_price(price_id)
        if match is None or not match.plan.is_paid:
            raise InvalidInputError(f"Unknown price id '{price_id}'.", code="billing.invalid_price")
        if match.is_yearly != is_yearly:
            raise InvalidInputError(
                "The price id does not match the requested billing interval.",
                code="billing.interval_mismatch",
            )
        record = _require_live(subscription_store.get_record(db, account_id))
        subscription_id = _require_processor_managed(record)
        if record.tier == match.plan.tier.value and bool(record.is_yearly_billing) == match.is_yearly:
            raise ConflictError("The account is already on this plan.", code="billing.same_plan")

        response = self._gateway_factory().update_subscription_price(subscription_id, price_id)
        changes = tier_changes(match.plan.tier, is_yearly=match.is_yearly)
        changes.update(resume_changes())
        snapshot = parse_subscription(response) if response.get("id") else None
        if snapshot is not None and snapshot.current_period_start is not None:
            changes["current_period_start"] = snapshot.current_period_start
            changes["current_period_end"] = snapshot.current_period_end or default_period_end(
                snapshot.current_period_start, is_yearly=match.is_yearly
            )
        updated = subscription_store.upsert_record(db, account_id, changes)
        subscription_store.commit(db, context=f"plan change for {account_id}")
        logger.info("Account %s moved from %s to %s.", account_id, record.tier, updated.tier)
        return updated

    def cancel(self, db: Session, account_id: str, *, immediately: bool = False) -> SubscriptionRecord:
        """Cancel now, or keep the tier until the current period ends."""
        record = _require_live(subscription_store.get_record(db, account_id))
        _reject_iap(record)
        now = utcnow()
        if record.processor_subscription_id:
            try:
                self._gateway_factory().cancel_subscription(record.processor_subscription_id, immediately=immediately)
            except NotFoundError:
                if not immediately:
                    raise
                logger.info("Subscription %s already gone at the processor.", record.processor_subscription_id)

        if immediately:
            updated = subscription_store.upsert_record(db, account_id, cancellation_changes(now), now=now)
        else:
            updated = subscription_store.update_record(db, account_id, scheduled_cancel_changes(now), now=now) or record
        subscription_store.commit(db, context=f"cancel for {account_id}")

        if immediately:
            self.retry_scheduler.reset(record.processor_customer_id)
            self._notifier(
                account_id,
                notification_service.KIND_CANCELED,
                "Subscription canceled",
                "Your subscription has been canceled and your account is now on the Free plan.",
                {"immediately": True},
            )
        logger.info("Account %s canceled (immediately=%s).", account_id, immediately)
        return updated

    def resume(self, db: Session, account_id: str) -> SubscriptionRecord:
        record = _require_live(subscription_store.get_record(db, account_id))
        if not record.cancel_at_period_end:
            raise ConflictError("Subscription is not scheduled for cancellation.", code="billing.not_canceling")
        if record.processor_subscription_id:
            _require_processor_managed(record)
            self._gateway_factory().resume_subscription(record.processor_subscription_id)
        updated = subscription_store.update_record(db, account_id, resume_changes()) or record
        subscription_store.commit(db, context=f"resume for {account_id}")
        return updated

    def pause(self, db: Session, account_id: str) -> SubscriptionRecord:
        record = subscription_store.require_record(db, account_id)
        ensure_transition(record.status, SubscriptionStatus.PAUSED)
        if record.status == SubscriptionStatus.PAUSED.value:
            return record
        subscription_id = _require_processor_managed(record)
        self._gateway_factory().pause_subscription(subscription_id)
        updated = subscription_store.update_record(
            db,
            account_id,
            {"status": SubscriptionStatus.PAUSED.value},
            conditions=[SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value],
        )
        subscription_store.commit(db, context=f"pause for {account_id}")
        return updated or subscription_store.require_record(db, account_id)

    def unpause(self, db: Session, account_id: str) -> SubscriptionRecord:
        record = subscription_store.require_record(db, account_id)
        if record.status != SubscriptionStatus.PAUSED.value:
            raise ConflictError("Subscription is not paused.", code="billing.not_paused")
        subscription_id = _require_processor_managed(record)
        self._gateway_factory().unpause_subscription(subscription_id)
        updated = subscription_store.update_record(
            db,
            account_id,
            {"status": SubscriptionStatus.ACTIVE.value},
            conditions=[SubscriptionRecord.status == SubscriptionStatus.PAUSED.value],
        )
        subscription_store.commit(db, context=f"unpause for {account_id}")
        return updated or subscription_store.require_record(db, account_id)

    def start_trial(self, db: Session, account_id: str, *, tier: PlanTier = PlanTier.PRO) -> SubscriptionRecord:
        """Start a processor-less trial; each account gets one."""
        if PlanTier(tier) == PlanTier.FREE:
            raise InvalidInputError("Trials are only available for paid plans.")
        days = self._trial_days if self._trial_days is not None else get_billing_settings().trial_days
        now = utcnow()
        subscription_store.ensure_record(db, account_id, now=now)
        updated = subscription_store.update_record(
            db,
            account_id,
            trial_changes(tier=tier, trial_start=now, trial_end=now + timedelta(days=days)),
            conditions=[
                SubscriptionRecord.trial_start.is_(None),
                SubscriptionRecord.status.notin_(_ENTITLED_VALUES) | (SubscriptionRecord.tier == PlanTier.FREE.value),
            ],
            now=now,
        )
        if updated is None:
            db.rollback()
            raise ConflictError("A trial has already been used on this account.", code="billing.trial_used")
        subscription_store.commit(db, context=f"trial for {account_id}")
        self._notifier(
            account_id,
            notification_service.KIND_ACTIVATED,
            "Trial started",
            f"Your {days}-day trial has started.",
            {"tier": PlanTier(tier).value, "trialEnd": updated.trial_end.isoformat() if updated.trial_end else None},
        )
        return updated

    # Processor sync ----------------------------------------------------

    def sync_subscription(self, db: Session, account_id: str) -> SubscriptionRecord:
        record = sync_from_processor(db, account_id, self._gateway_factory(), catalog=self.catalog)
        subscription_store.commit(db, context=f"sync for {account_id}")
        if record.status == SubscriptionStatus.ACTIVE.value:
            self.retry_scheduler.reset(record.processor_customer_id)
        return record

    def restore_purchases(self, db: Session, account_id: str) -> SubscriptionRecord:
        """Refresh card-path state from the processor; app-store purchases are restored by resubmitting the receipt."""
        record = subscription_store.require_record(db, account_id)
        if subscription_store.is_iap_record(record) or not record.processor_subscription_id:
            return record
        return self.sync_subscription(db, account_id)

    # Payment methods ---------------------------------------------------

    def list_payment_methods(self, db: Session, account_id: str) -> List[PaymentMethod]:
        return subscription_store.list_payment_methods(db, account_id)

    def add_payment_method(
        self,
        db: Session,
        account_id: str,
        payment_method_id: str,
        *,
        set_default: bool = False,
    ) -> PaymentMethod:
        gateway = self._gateway_factory()
        customer_id = ensure_processor_customer(db, account_id, gateway)
        attached = gateway.attach_payment_method(payment_method_id, customer_id)
        make_default = set_default or not subscription_store.list_payment_methods(db, account_id)
        if make_default:
            gateway.set_default_payment_method(customer_id, payment_method_id)
        brand, last4, exp_month, exp_year = _card_details(attached)
        method = subscription_store.save_payment_method(
            db,
            account_id=account_id,
            external_id=payment_method_id,
            method_type=str(attached.get("type") or "card"),
            brand=brand,
            last4=last4,
            exp_month=exp_month,
            exp_year=exp_year,
            make_default=make_default,
        )
        subscription_store.commit(db, context=f"add payment method for {account_id}")
        return method

    def remove_payment_method(self, db: Session, account_id: str, payment_method_id: str) -> None:
        method = subscription_store.get_payment_method(db, account_id, payment_method_id)
        was_default = bool(method.is_default)
        gateway = self._gateway_factory()
        try:
            gateway.detach_payment_method(payment_method_id)
        except NotFoundError:
            logger.info("Payment method %s already detached at the processor.", payment_method_id)
        subscription_store.delete_payment_method(db, account_id, payment_method_id)
        remaining = subscription_store.list_payment_methods(db, account_id)
        if was_default and remaining:
            successor = remaining[0].external_payment_method_id
            account = account_service.get_account(db, account_id)
            if account.processor_customer_id:
                gateway.set_default_payment_method(account.processor_customer_id, successor)
            subscription_store.set_default_payment_method(db, account_id, successor)
        subscription_store.commit(db, context=f"remove payment method for {account_id}")

    def set_default_payment_method(self, db: Session, account_id: str, payment_method_id: str) -> PaymentMethod:
        subscription_store.get_payment_method(db, account_id, payment_method_id)
        account = account_service.get_account(db, account_id)
        if not account.processor_customer_id:
            raise NotFoundError("No billing account exists for this account.", code="billing.no_customer")
        self._gateway_factory().set_default_payment_method(account.processor_customer_id, payment_method_id)
        method = subscription_store.set_default_payment_method(db, account_id, payment_method_id)
        subscription_store.commit(db, context=f"default payment method for {account_id}")
        return method

    # Billing portal ----------------------------------------------------

    def create_portal_session(self, db: Session, account_id: str, *, return_url: str) -> str:
        account = account_service.get_account(db, account_id)
        if not account.processor_customer_id:
            raise NotFoundError("No billing account exists for this account.", code="billing.no_customer")
        session = self._gateway_factory().create_billing_portal_session(account.processor_customer_id, return_url)
        url = session.get("url")
        if not isinstance(url, str) or not url:
            raise ExternalServiceError("Billing portal session has no URL.", code="billing.portal_unavailable")
        return url


subscription_service = SubscriptionService()

__all__ = ["SubscriptionService", "subscription_service"]
