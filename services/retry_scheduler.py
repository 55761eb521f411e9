"""Bounded dunning checks after a failed payment, keyed by processor customer id.

State lives in the durable TTL store under ``retry:{customer_id}`` so checks
survive restarts and run on any worker. Each check is delivered as a delayed
Celery task; after the last attempt a still-unpaid subscription is canceled.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

import database
from core.billing_settings import BillingSettings, get_billing_settings
from core.clock import utcnow
from core.plan_constants import SubscriptionStatus
from models.subscription import SubscriptionRecord
from services import notification_service, subscription_store
from services.billing_errors import ExternalServiceError, NotFoundError
from services.payments.state_store import BillingStateStore, get_state_store
from services.payments.stripe_gateway import StripeGateway, get_payment_gateway
from services.subscription_state import cancellation_changes
from services.subscription_sync import sync_from_processor

logger = logging.getLogger(__name__)

# (customer_id, delay_seconds, *, sequence, attempt)
RetryDispatcher = Callable[..., None]

OUTCOME_IDLE = "idle"
OUTCOME_RECOVERED = "recovered"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_CANCELED = "canceled"


def retry_key(customer_id: str) -> str:
    return f"retry:{customer_id}"


def _check_matches(state: Dict[str, Any], sequence: Optional[str], attempt: Optional[int]) -> bool:
    if sequence is not None and state.get("sequence") != sequence:
        return False
    return attempt is None or int(state.get("attempts") or 0) == attempt


def celery_dispatch(customer_id: str, delay_seconds: int, *, sequence: Optional[str] = None, attempt: int = 0) -> None:
    from jobs.tasks import check_payment_retry

    check_payment_retry.apply_async(
        args=[customer_id],
        kwargs={"sequence": sequence, "attempt": attempt},
        countdown=delay_seconds,
    )


class RetryScheduler:
    def __init__(
        self,
        *,
        store: Optional[BillingStateStore] = None,
        settings: Optional[BillingSettings] = None,
        dispatcher: Optional[RetryDispatcher] = None,
        gateway_factory: Optional[Callable[[], StripeGateway]] = None,
        session_factory: Optional[database.SessionFactory] = None,
        notifier: Optional[notification_service.Notifier] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._dispatcher = dispatcher or celery_dispatch
        self._gateway_factory = gateway_factory or get_payment_gateway
        self._session_factory = session_factory
        self._notifier = notifier or notification_service.notify_account

    @property
    def store(self) -> BillingStateStore:
        return self._store or get_state_store()

    @property
    def settings(self) -> BillingSettings:
        return self._settings or get_billing_settings()

    def _delay_for(self, attempt: int) -> int:
        delays = self.settings.retry_delays_seconds
        return int(delays[min(attempt, len(delays) - 1)])

    def pending(self, customer_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(retry_key(customer_id))

    def on_payment_failed(
        self,
        customer_id: str,
        *,
        account_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> bool:
        """Start the retry sequence unless one is already running for the customer."""
        state = {
            "attempts": 0,
            "account_id": account_id,
            "invoice_id": invoice_id,
            "started_at": utcnow().isoformat(),
            "sequence": uuid.uuid4().hex,
        }
        if not self.store.set_if_absent(retry_key(customer_id), state, ttl_seconds=self.settings.retry_state_ttl_seconds):
            logger.info("Payment retry already pending for customer=%s.", customer_id)
            return False
        delay = self._delay_for(0)
        self._dispatcher(customer_id, delay, sequence=state["sequence"], attempt=0)
        logger.info(
            "Scheduled payment retry check for customer=%s in %ss.",
            customer_id,
            delay,
            extra={"retry": {"customer_id": customer_id, "attempt": 0, "delay": delay}},
        )
        return True

    def reset(self, customer_id: Optional[str]) -> None:
        """Forget retry state after any successful payment for the customer."""
        if not customer_id:
            return
        self.store.delete(retry_key(customer_id))

    def _session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    def _refresh_from_processor(self, db: Session, record: SubscriptionRecord) -> SubscriptionRecord:
        if not record.processor_subscription_id or subscription_store.is_iap_record(record):
            return record
        try:
            refreshed = sync_from_processor(db, record.account_id, self._gateway_factory())
            db.commit()
            return refreshed
        except ExternalServiceError as exc:
            db.rollback()
            logger.warning("Could not refresh subscription for account=%s before retry check: %s", record.account_id, exc)
            return record

    def run_check(self, customer_id: str, *, sequence: Optional[str] = None, attempt: Optional[int] = None) -> str:
        """Execute one scheduled check; returns the outcome label.

        ``sequence`` and ``attempt`` identify the queued check. A check left over
        from an earlier sequence, or already superseded by a later attempt, is a
        no-op so one sequence advances once per backoff interval.
        """
        key = retry_key(customer_id)
        state = self.store.get(key)
        if state is None:
            logger.debug("No pending payment retry for customer=%s.", customer_id)
            return OUTCOME_IDLE
        if not _check_matches(state, sequence, attempt):
            logger.info(
                "Ignoring stale payment retry check for customer=%s (sequence=%s attempt=%s).",
                customer_id,
                sequence,
                attempt,
            )
            return OUTCOME_IDLE

        with self._session() as db:
            record = subscription_store.find_by_customer(db, customer_id)
            if record is not None and record.status != SubscriptionStatus.ACTIVE.value:
                record = self._refresh_from_processor(db, record)
            if record is None or record.status == SubscriptionStatus.ACTIVE.value:
                self.store.delete(key)
                logger.info("Customer %s recovered; payment retry cleared.", customer_id)
                return OUTCOME_RECOVERED
            if record.status == SubscriptionStatus.CANCELED.value:
                self.store.delete(key)
                return OUTCOME_CANCELED

            attempts = int(state.get("attempts") or 0) + 1
            if attempts >= self.settings.retry_max_attempts:
                self._force_cancel(db, record, customer_id, attempts)
                self.store.delete(key)
                return OUTCOME_CANCELED

        state["attempts"] = attempts
        self.store.set(key, state, ttl_seconds=self.settings.retry_state_ttl_seconds)
        delay = self._delay_for(attempts)
        self._dispatcher(customer_id, delay, sequence=state.get("sequence"), attempt=attempts)
        logger.info(
            "Payment still outstanding for customer=%s; attempt %d/%d, next check in %ss.",
            customer_id,
            attempts,
            self.settings.retry_max_attempts,
            delay,
            extra={"retry": {"customer_id": customer_id, "attempt": attempts, "delay": delay}},
        )
        return OUTCOME_RESCHEDULED

    def _force_cancel(self, db: Session, record: SubscriptionRecord, customer_id: str, attempts: int) -> None:
        if record.processor_subscription_id and not subscription_store.is_iap_record(record):
            try:
                self._gateway_factory().cancel_subscription(record.processor_subscription_id, immediately=True)
            except NotFoundError:
                logger.info("Subscription %s already gone at the processor.", record.processor_subscription_id)
            except ExternalServiceError:
                logger.exception(
                    "Processor cancel failed for subscription=%s; canceling locally, operator follow-up required.",
                    record.processor_subscription_id,
                )

        account_id = record.account_id
        now = utcnow()
        canceled = subscription_store.update_record(
            db,
            account_id,
            cancellation_changes(now),
            conditions=[SubscriptionRecord.status != SubscriptionStatus.ACTIVE.value],
            now=now,
        )
        subscription_store.commit(db, context=f"forced cancel for {account_id}")
        if canceled is None:
            logger.info("Account %s recovered during forced cancel; leaving it active.", account_id)
            return
        logger.warning(
            "Payment retries exhausted for customer=%s after %d attempts; subscription canceled.",
            customer_id,
            attempts,
            extra={"retry": {"customer_id": customer_id, "attempt": attempts, "account_id": account_id}},
        )
        self._notifier(
            account_id,
            notification_service.KIND_CANCELED,
            "Subscription canceled",
            "We could not collect your payment, so your subscription has been canceled.",
            {"reason": "payment_failed"},
        )


_DEFAULT_SCHEDULER: Optional[RetryScheduler] = None


def get_retry_scheduler() -> RetryScheduler:
    global _DEFAULT_SCHEDULER
    if _DEFAULT_SCHEDULER is None:
        _DEFAULT_SCHEDULER = RetryScheduler()
    return _DEFAULT_SCHEDULER


__all__ = [
    "OUTCOME_CANCELED",
    "OUTCOME_IDLE",
    "OUTCOME_RECOVERED",
    "OUTCOME_RESCHEDULED",
    "RetryDispatcher",
    "RetryScheduler",
    "celery_dispatch",
    "get_retry_scheduler",
    "retry_key",
]
