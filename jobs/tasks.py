"""Celery tasks for payment retries and periodic billing sweeps."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from celery import shared_task
from sqlalchemy.exc import OperationalError

from services import billing_maintenance
from services.retry_scheduler import get_retry_scheduler

logger = logging.getLogger(__name__)

RETRY_TASK_BACKOFF_SECONDS = 60


@shared_task(name="billing.check_payment_retry", bind=True, max_retries=3)
def check_payment_retry(
    self, customer_id: str, sequence: Optional[str] = None, attempt: Optional[int] = None
) -> Dict[str, str]:
    """Run one scheduled dunning check for a processor customer."""
    try:
        outcome = get_retry_scheduler().run_check(customer_id, sequence=sequence, attempt=attempt)
    except OperationalError as exc:
        logger.warning("Payment retry check for customer=%s hit a database error: %s", customer_id, exc)
        raise self.retry(exc=exc, countdown=RETRY_TASK_BACKOFF_SECONDS)
    return {"customer_id": customer_id, "outcome": outcome}


@shared_task(name="billing.sweep_lapsed_subscriptions")
def sweep_lapsed_subscriptions(limit: int = 500) -> Dict[str, int]:
    canceled = billing_maintenance.sweep_lapsed_subscriptions(limit=limit)
    return {"canceled": canceled}


@shared_task(name="billing.reconcile_account_flags")
def reconcile_account_flags(limit: int = 500) -> Dict[str, int]:
    repaired = billing_maintenance.reconcile_account_flags(limit=limit)
    if repaired:
        logger.warning("Repaired %d account(s) with drifted subscription flags.", repaired)
    return {"repaired": repaired}


@shared_task(name="billing.prune_webhook_ledger")
def prune_webhook_ledger() -> Dict[str, int]:
    return {"removed": billing_maintenance.prune_webhook_ledger()}


@shared_task(name="billing.prune_expired_state")
def prune_expired_state() -> Dict[str, int]:
    return {"removed": billing_maintenance.prune_expired_state()}


__all__ = [
    "check_payment_retry",
    "prune_expired_state",
    "prune_webhook_ledger",
    "reconcile_account_flags",
    "sweep_lapsed_subscriptions",
]
