"""Inbound processor webhooks: verification, idempotency and state reconciliation.

Each verified event is applied in one database transaction together with its
ledger row. Business failures are rolled back, recorded in the ledger with
the raw payload, and acknowledged so the processor does not redeliver; an
operator replays them with :meth:`WebhookReconciler.replay_failed_webhook`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

import database
from core.billing_settings import BillingSettings, get_billing_settings
from core.clock import utcnow
from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from models.payments import ProcessedWebhookEvent
from models.subscription import SubscriptionRecord
from services import account_service, notification_service, subscription_store
from services.billing_errors import ConflictError, InvalidInputError, NotFoundError, SignatureVerificationFailed
from services.payments import webhook_ledger
from services.payments.stripe_gateway import StripeGateway, get_payment_gateway, verify_stripe_signature
from services.payments.webhook_events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceSnapshot,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    TrialWillEnd,
    UnhandledEvent,
    WebhookEvent,
    parse_event,
    parse_subscription,
)
from services.plan_catalog_service import PlanCatalog, load_plan_catalog
from services.retry_scheduler import RetryScheduler, get_retry_scheduler
from services.subscription_state import activation_changes, cancellation_changes, is_entitled, past_due_changes
from services.subscription_sync import (
    apply_subscription_snapshot,
    belongs_to_other_subscription,
    is_ended_subscription,
    is_stale_event,
)

logger = logging.getLogger(__name__)

RESULT_DUPLICATE = "duplicate"
RESULT_REJECTED = "rejected"

Effect = Callable[[], Any]


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: Optional[str]
    event_type: Optional[str]
    result: str
    account_id: Optional[str] = None
    error: Optional[str] = None


class WebhookReconciler:
    def __init__(
        self,
        *,
        settings: Optional[BillingSettings] = None,
        session_factory: Optional[database.SessionFactory] = None,
        gateway_factory: Optional[Callable[[], StripeGateway]] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        notifier: Optional[notification_service.Notifier] = None,
        catalog: Optional[PlanCatalog] = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._gateway_factory = gateway_factory or get_payment_gateway
        self._retry_scheduler = retry_scheduler
        self._notifier = notifier or notification_service.notify_account
        self._catalog = catalog

    @property
    def settings(self) -> BillingSettings:
        return self._settings or get_billing_settings()

    @property
    def retry_scheduler(self) -> RetryScheduler:
        return self._retry_scheduler or get_retry_scheduler()

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog or load_plan_catalog()

    def _session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        """Check the signature; raises in production, returns False elsewhere."""
        settings = self.settings
        if settings.webhook_skip_verification:
            logger.debug("Webhook signature verification skipped (APP_ENV=%s).", settings.app_env)
            return True
        secret = settings.stripe_webhook_secret
        valid = bool(secret) and verify_stripe_signature(
            payload=raw_payload,
            signature_header=signature_header,
            secret=secret or "",
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
        if valid:
            return True
        reason = "missing signature" if not signature_header else "invalid signature"
        if not secret:
            reason = "webhook secret not configured"
        if settings.is_production:
            logger.warning("Rejected webhook: %s.", reason)
            raise SignatureVerificationFailed(f"Webhook signature verification failed: {reason}.")
        logger.warning("Dropping unverified webhook outside production: %s.", reason)
        return False

    def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """Verify, deduplicate and apply one raw webhook delivery."""
        if not self.verify_signature(raw_payload, signature_header):
            return WebhookOutcome(event_id=None, event_type=None, result=RESULT_REJECTED)
        try:
            document = json.loads(raw_payload.decode("utf-8"))
            if not isinstance(document, dict):
                raise InvalidInputError("Webhook body must be a JSON object.")
            event = parse_event(document)
        except (UnicodeDecodeError, ValueError, InvalidInputError) as exc:
            logger.warning("Ignoring undecodable webhook body: %s", exc)
            return WebhookOutcome(event_id=None, event_type=None, result=webhook_ledger.RESULT_IGNORED, error=str(exc))
        return self.process_event(event)

    def process_event(self, event: WebhookEvent, *, replay: bool = False) -> WebhookOutcome:
        effects: List[Effect] = []
        prefetched: List[Optional[SubscriptionSnapshot]] = [None]

        def operation(db: Session) -> WebhookOutcome:
            effects.clear()
            if replay and not webhook_ledger.release_failed(db, event.event_id):
                return WebhookOutcome(event.event_id, event.event_type, RESULT_DUPLICATE)
            if not webhook_ledger.claim_event(db, event_id=event.event_id, event_type=event.event_type):
                logger.info("Webhook %s already processed; acknowledging.", event.event_id)
                return WebhookOutcome(event.event_id, event.event_type, RESULT_DUPLICATE)
            result, account_id = self._dispatch(db, event, effects, prefetched[0])
            webhook_ledger.mark_result(db, event.event_id, result=result, account_id=account_id)
            return WebhookOutcome(event.event_id, event.event_type, result, account_id=account_id)

        try:
            prefetched[0] = self._fetch_checkout_subscription(event)
            outcome = subscription_store.run_transaction(
                operation,
                context=f"webhook {event.event_type} {event.event_id}",
                session_factory=self._session_factory,
            )
        except Exception as exc:  # acknowledged at the edge; recorded for replay
            logger.exception(
                "Webhook handler failed for event=%s type=%s.",
                event.event_id,
                event.event_type,
                extra={"webhook": {"event_id": event.event_id, "event_type": event.event_type}},
            )
            self._record_failure(event, exc)
            return WebhookOutcome(event.event_id, event.event_type, webhook_ledger.RESULT_FAILED, error=str(exc))

        self._run_effects(effects, event)
        logger.info(
            "Webhook %s (%s) -> %s.",
            event.event_id,
            event.event_type,
            outcome.result,
            extra={"webhook": {"event_id": event.event_id, "result": outcome.result, "account_id": outcome.account_id}},
        )
        return outcome

    def replay_failed_webhook(self, event_id: str) -> WebhookOutcome:
        """Re-apply an event whose handler previously failed, from its stored payload."""
        with self._session() as db:
            entry = webhook_ledger.get_entry(db, event_id)
            if entry is None:
                raise NotFoundError(f"Webhook event {event_id} is not in the ledger.", code="billing.webhook_not_found")
            if entry.result != webhook_ledger.RESULT_FAILED:
                raise ConflictError(f"Webhook event {event_id} did not fail ({entry.result}).", code="billing.webhook_not_failed")
            if not isinstance(entry.payload, dict):
                raise InvalidInputError(f"Webhook event {event_id} has no stored payload.")
            payload = dict(entry.payload)
        return self.process_event(parse_event(payload), replay=True)

    def list_failed_webhooks(self, *, limit: int = 100) -> List[ProcessedWebhookEvent]:
        with self._session() as db:
            return webhook_ledger.list_failed(db, limit=limit)

    # ------------------------------------------------------------------
    # Failure bookkeeping and side effects
    # ------------------------------------------------------------------

    def _record_failure(self, event: WebhookEvent, exc: Exception) -> None:
        def operation(db: Session) -> None:
            webhook_ledger.record_failure(
                db,
                event_id=event.event_id,
                event_type=event.event_type,
                error=f"{type(exc).__name__}: {exc}",
                payload=event.raw or None,
            )

        try:
            subscription_store.run_transaction(
                operation,
                context=f"webhook failure record {event.event_id}",
                session_factory=self._session_factory,
            )
        except Exception:  # the ERROR log above is the operator signal of last resort
            logger.exception("Could not record failed webhook %s in the ledger.", event.event_id)

    @staticmethod
    def _run_effects(effects: List[Effect], event: WebhookEvent) -> None:
        for effect in effects:
            try:
                effect()
            except Exception:  # fire-and-forget after commit
                logger.exception("Post-commit side effect failed for webhook %s.", event.event_id)

    def _notify(self, effects: List[Effect], account_id: str, kind: str, title: str, body: str) -> None:
        effects.append(lambda: self._notifier(account_id, kind, title, body, {}))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _fetch_checkout_subscription(self, event: WebhookEvent) -> Optional[SubscriptionSnapshot]:
        """Processor read for a paid checkout, made before the transaction so database retries do not repeat it."""
        payload = event.payload
        if not isinstance(payload, CheckoutCompleted) or payload.payment_status != "paid" or not payload.subscription_id:
            return None
        return parse_subscription(self._gateway_factory().retrieve_subscription(payload.subscription_id))

    def _dispatch(
        self,
        db: Session,
        event: WebhookEvent,
        effects: List[Effect],
        checkout_subscription: Optional[SubscriptionSnapshot] = None,
    ) -> Tuple[str, Optional[str]]:
        payload = event.payload
        if isinstance(payload, CheckoutCompleted):
            return self._on_checkout_completed(db, payload, effects, checkout_subscription)
        if isinstance(payload, InvoicePaid):
            return self._on_invoice_paid(db, event, payload.invoice, effects)
        if isinstance(payload, InvoicePaymentFailed):
            return self._on_invoice_failed(db, event, payload.invoice, effects)
        if isinstance(payload, SubscriptionChanged):
            return self._on_subscription_changed(db, event, payload, effects)
        if isinstance(payload, SubscriptionDeleted):
            return self._on_subscription_deleted(db, event, payload, effects)
        if isinstance(payload, TrialWillEnd):
            return self._on_trial_will_end(db, payload, effects)
        if isinstance(payload, UnhandledEvent):
            logger.debug("Acknowledging unhandled webhook type %s.", payload.event_type)
            return webhook_ledger.RESULT_IGNORED, None
        raise TypeError(f"Unsupported webhook payload {type(payload).__name__}")

    def _resolve(
        self,
        db: Session,
        *,
        account_id: Optional[str],
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Tuple[str, Optional[SubscriptionRecord]]:
        if account_id:
            return account_id, subscription_store.get_record(db, account_id)
        if subscription_id:
            record = subscription_store.find_by_processor_subscription(db, subscription_id)
            if record is not None:
                return record.account_id, record
        if customer_id:
            record = subscription_store.find_by_customer(db, customer_id)
            if record is not None:
                return record.account_id, record
            account = account_service.find_account_by_customer(db, customer_id)
            if account is not None:
                return account.id, None
        raise NotFoundError(
            f"No account matches subscription={subscription_id} customer={customer_id}.",
            code="billing.account_unresolved",
        )

    def _on_checkout_completed(
        self,
        db: Session,
        payload: CheckoutCompleted,
        effects: List[Effect],
        snapshot: Optional[SubscriptionSnapshot],
    ) -> Tuple[str, Optional[str]]:
        account_id, record = self._resolve(
            db,
            account_id=payload.account_id,
            subscription_id=payload.subscription_id,
            customer_id=payload.customer_id,
        )
        if payload.customer_id:
            account_service.claim_processor_customer_id(db, account_id, payload.customer_id)
        if snapshot is None:
            return webhook_ledger.RESULT_SKIPPED, account_id
        if belongs_to_other_subscription(record, payload.subscription_id):
            logger.info("Checkout %s names a superseded subscription; skipping.", payload.session_id)
            return webhook_ledger.RESULT_SKIPPED, account_id

        updated = apply_subscription_snapshot(db, account_id, snapshot, catalog=self.catalog)
        if updated is None:
            return webhook_ledger.RESULT_SKIPPED, account_id
        customer_id = updated.processor_customer_id
        effects.append(lambda: self.retry_scheduler.reset(customer_id))
        return webhook_ledger.RESULT_PROCESSED, account_id

    def _on_invoice_paid(
        self, db: Session, event: WebhookEvent, invoice: InvoiceSnapshot, effects: List[Effect]
    ) -> Tuple[str, Optional[str]]:
        account_id, record = self._resolve(
            db,
            account_id=invoice.account_id,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer_id,
        )
        subscription_store.record_invoice(
            db,
            account_id=account_id,
            external_invoice_id=invoice.invoice_id,
            amount=invoice.amount_due,
            amount_paid=invoice.amount_paid,
            currency=invoice.currency,
            status="paid",
            paid_at=invoice.paid_at or utcnow(),
            processor_subscription_id=invoice.subscription_id,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        customer_id = invoice.customer_id or (record.processor_customer_id if record is not None else None)
        effects.append(lambda: self.retry_scheduler.reset(customer_id))

        if not invoice.subscription_id or belongs_to_other_subscription(record, invoice.subscription_id):
            return webhook_ledger.RESULT_PROCESSED, account_id
        if is_ended_subscription(record, invoice.subscription_id) or is_stale_event(record, event.created):
            # The charge is kept; the subscription state already moved past this invoice.
            logger.info(
                "Invoice %s for subscription %s arrived after a newer state for account=%s; recorded without activation.",
                invoice.invoice_id,
                invoice.subscription_id,
                account_id,
            )
            return webhook_ledger.RESULT_PROCESSED, account_id

        match = self.catalog.match_price(invoice.price_id)
        if match is not None:
            tier, is_yearly = match.plan.tier, match.is_yearly
        elif record is not None and record.tier != PlanTier.FREE.value:
            tier, is_yearly = PlanTier(record.tier), bool(record.is_yearly_billing)
        else:
            logger.warning("Paid invoice %s has no recognisable plan; recorded without activation.", invoice.invoice_id)
            return webhook_ledger.RESULT_PROCESSED, account_id

        was_live = record is not None and is_entitled(record.status, record.tier)
        changes = activation_changes(
            tier=tier,
            is_yearly=is_yearly,
            period_start=invoice.period_start or utcnow(),
            period_end=invoice.period_end,
            source=BillingSource.CARD,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer_id,
        )
        if record is not None and record.cancel_at_period_end and was_live:
            # Paying the current period does not undo a scheduled cancel.
            changes["cancel_at_period_end"] = True
            changes["canceled_at"] = record.canceled_at
        subscription_store.upsert_record(db, account_id, changes)
        if was_live:
            self._notify(effects, account_id, notification_service.KIND_RENEWED, "Subscription renewed", "Your subscription has been renewed.")
        else:
            self._notify(effects, account_id, notification_service.KIND_ACTIVATED, "Subscription active", "Your subscription is now active.")
        return webhook_ledger.RESULT_PROCESSED, account_id

    def _on_invoice_failed(
        self, db: Session, event: WebhookEvent, invoice: InvoiceSnapshot, effects: List[Effect]
    ) -> Tuple[str, Optional[str]]:
        account_id, record = self._resolve(
            db,
            account_id=invoice.account_id,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer_id,
        )
        if record is None or belongs_to_other_subscription(record, invoice.subscription_id):
            return webhook_ledger.RESULT_SKIPPED, account_id
        if is_stale_event(record, event.created):
            logger.info("Skipping out-of-order payment failure %s for account=%s.", invoice.invoice_id, account_id)
            return webhook_ledger.RESULT_SKIPPED, account_id
        updated = subscription_store.update_record(
            db,
            account_id,
            past_due_changes(),
            conditions=[
                SubscriptionRecord.status.in_(
                    [
                        SubscriptionStatus.ACTIVE.value,
                        SubscriptionStatus.TRIALING.value,
                        SubscriptionStatus.PAST_DUE.value,
                    ]
                )
            ],
        )
        if updated is None:
            logger.info("Ignoring payment failure for account=%s in status %s.", account_id, record.status)
            return webhook_ledger.RESULT_SKIPPED, account_id

        customer_id = invoice.customer_id or updated.processor_customer_id
        if customer_id:
            effects.append(
                lambda: self.retry_scheduler.on_payment_failed(
                    customer_id, account_id=account_id, invoice_id=invoice.invoice_id
                )
            )
        self._notify(
            effects,
            account_id,
            notification_service.KIND_PAYMENT_FAILED,
            "Payment failed",
            "We could not process your payment. Please update your payment method.",
        )
        return webhook_ledger.RESULT_PROCESSED, account_id

    def _on_subscription_changed(
        self, db: Session, event: WebhookEvent, payload: SubscriptionChanged, effects: List[Effect]
    ) -> Tuple[str, Optional[str]]:
        snapshot = payload.subscription
        account_id, record = self._resolve(
            db,
            account_id=snapshot.account_id,
            subscription_id=snapshot.subscription_id,
            customer_id=snapshot.customer_id,
        )
        if is_stale_event(record, event.created):
            logger.info("Skipping out-of-order %s for account=%s.", event.event_type, account_id)
            return webhook_ledger.RESULT_SKIPPED, account_id
        if belongs_to_other_subscription(record, snapshot.subscription_id):
            logger.info("Skipping %s for superseded subscription %s.", event.event_type, snapshot.subscription_id)
            return webhook_ledger.RESULT_SKIPPED, account_id

        updated = apply_subscription_snapshot(db, account_id, snapshot, event_at=event.created, catalog=self.catalog)
        if updated is None:
            return webhook_ledger.RESULT_SKIPPED, account_id
        customer_id = updated.processor_customer_id
        if customer_id and updated.status == SubscriptionStatus.PAST_DUE.value:
            effects.append(lambda: self.retry_scheduler.on_payment_failed(customer_id, account_id=account_id))
        elif updated.status == SubscriptionStatus.ACTIVE.value:
            effects.append(lambda: self.retry_scheduler.reset(customer_id))
        return webhook_ledger.RESULT_PROCESSED, account_id

    def _on_subscription_deleted(
        self, db: Session, event: WebhookEvent, payload: SubscriptionDeleted, effects: List[Effect]
    ) -> Tuple[str, Optional[str]]:
        snapshot = payload.subscription
        account_id, record = self._resolve(
            db,
            account_id=snapshot.account_id,
            subscription_id=snapshot.subscription_id,
            customer_id=snapshot.customer_id,
        )
        if record is None:
            return webhook_ledger.RESULT_SKIPPED, account_id
        if belongs_to_other_subscription(record, snapshot.subscription_id):
            logger.info("Ignoring deletion of superseded subscription %s.", snapshot.subscription_id)
            return webhook_ledger.RESULT_SKIPPED, account_id

        was_live = is_entitled(record.status, record.tier)
        changes = cancellation_changes(snapshot.canceled_at or utcnow())
        if event.created is not None:
            changes["last_processor_event_at"] = event.created
        subscription_store.upsert_record(db, account_id, changes)
        customer_id = snapshot.customer_id or record.processor_customer_id
        effects.append(lambda: self.retry_scheduler.reset(customer_id))
        if was_live:
            self._notify(
                effects,
                account_id,
                notification_service.KIND_CANCELED,
                "Subscription ended",
                "Your subscription has ended and your account is now on the Free plan.",
            )
        return webhook_ledger.RESULT_PROCESSED, account_id

    def _on_trial_will_end(self, db: Session, payload: TrialWillEnd, effects: List[Effect]) -> Tuple[str, Optional[str]]:
        snapshot = payload.subscription
        account_id, _ = self._resolve(
            db,
            account_id=snapshot.account_id,
            subscription_id=snapshot.subscription_id,
            customer_id=snapshot.customer_id,
        )
        ends = snapshot.trial_end.date().isoformat() if isinstance(snapshot.trial_end, datetime) else "soon"
        self._notify(
            effects,
            account_id,
            notification_service.KIND_TRIAL_ENDING,
            "Your trial is ending",
            f"Your free trial ends on {ends}.",
        )
        return webhook_ledger.RESULT_PROCESSED, account_id


_DEFAULT_RECONCILER: Optional[WebhookReconciler] = None


def get_webhook_reconciler() -> WebhookReconciler:
    global _DEFAULT_RECONCILER
    if _DEFAULT_RECONCILER is None:
        _DEFAULT_RECONCILER = WebhookReconciler()
    return _DEFAULT_RECONCILER


__all__ = [
    "RESULT_DUPLICATE",
    "RESULT_REJECTED",
    "WebhookOutcome",
    "WebhookReconciler",
    "get_webhook_reconciler",
]
