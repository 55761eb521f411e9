"""Periodic sweeps that keep local billing state converged."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

import database
from core.billing_settings import get_billing_settings
from core.clock import utcnow
from services import notification_service, subscription_store
from services.payments import webhook_ledger
from services.payments.state_store import BillingStateStore, get_state_store
from services.subscription_state import cancellation_changes

logger = logging.getLogger(__name__)


def sweep_lapsed_subscriptions(
    *,
    session_factory: Optional[database.SessionFactory] = None,
    notifier: Optional[notification_service.Notifier] = None,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> int:
    """Cancel soft-canceled subscriptions, processor-less trials and store purchases whose period has ended."""
    now = now or utcnow()
    notify = notifier or notification_service.notify_account
    factory = session_factory or database.SessionLocal
    with factory() as db:
        account_ids = [record.account_id for record in subscription_store.find_lapsed_records(db, now=now, limit=limit)]

    canceled: List[str] = []
    for account_id in account_ids:

        def operation(db: Session, account_id: str = account_id) -> bool:
            updated = subscription_store.update_record(
                db,
                account_id,
                cancellation_changes(now),
                conditions=[subscription_store.lapsed_condition(now)],
                now=now,
            )
            return updated is not None

        if subscription_store.run_transaction(operation, context=f"lapse sweep {account_id}", session_factory=factory):
            canceled.append(account_id)

    for account_id in canceled:
        notify(
            account_id,
            notification_service.KIND_CANCELED,
            "Subscription ended",
            "Your subscription period has ended and your account is now on the Free plan.",
            {"reason": "period_ended"},
        )
    if canceled:
        logger.info("Lapse sweep canceled %d subscription(s).", len(canceled))
    return len(canceled)


def reconcile_account_flags(
    *,
    session_factory: Optional[database.SessionFactory] = None,
    limit: int = 500,
) -> int:
    """Rewrite denormalized account fields that drifted from their subscription records."""

    def operation(db: Session) -> int:
        drifted = subscription_store.find_flag_drift(db, limit=limit)
        for record, account in drifted:
            logger.warning(
                "billing.inconsistent: account %s flags (tier=%s active=%s) drifted from record (tier=%s status=%s); repairing.",
                account.id,
                account.subscription_tier,
                account.has_active_subscription,
                record.tier,
                record.status,
            )
            subscription_store.resync_account_flags(db, record)
        return len(drifted)

    return subscription_store.run_transaction(
        operation,
        context="account flag reconciliation",
        session_factory=session_factory,
    )


def prune_webhook_ledger(
    *,
    session_factory: Optional[database.SessionFactory] = None,
    retention_hours: Optional[int] = None,
) -> int:
    hours = retention_hours if retention_hours is not None else get_billing_settings().webhook_retention_hours
    return subscription_store.run_transaction(
        lambda db: webhook_ledger.prune(db, retention_hours=hours),
        context="webhook ledger prune",
        session_factory=session_factory,
    )


def prune_expired_state(store: Optional[BillingStateStore] = None) -> int:
    removed = (store or get_state_store()).purge_expired()
    if removed:
        logger.info("Purged %d expired billing state entries.", removed)
    return removed


__all__ = [
    "prune_expired_state",
    "prune_webhook_ledger",
    "reconcile_account_flags",
    "sweep_lapsed_subscriptions",
]
