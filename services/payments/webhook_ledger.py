"""Idempotency ledger for processor webhook events.

The primary key on ``processed_webhook_events`` is the concurrency primitive:
the claim is an ``INSERT .. ON CONFLICT DO NOTHING`` executed in the same
transaction as the event's effects, so a concurrent duplicate either waits for
the first delivery to commit and then sees the row, or takes over after a
rollback.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from core.clock import utcnow
from models.payments import ProcessedWebhookEvent
from services.db_utils import dialect_insert

logger = logging.getLogger(__name__)

RESULT_PROCESSED = "processed"
RESULT_IGNORED = "ignored"
RESULT_SKIPPED = "skipped"
RESULT_FAILED = "failed"


def get_entry(db: Session, event_id: str) -> Optional[ProcessedWebhookEvent]:
    statement = (
        select(ProcessedWebhookEvent)
        .where(ProcessedWebhookEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return db.execute(statement).scalar_one_or_none()


def has_processed(db: Session, event_id: Optional[str]) -> bool:
    if not event_id:
        return False
    return get_entry(db, event_id) is not None


def claim_event(db: Session, *, event_id: str, event_type: str) -> bool:
    """Insert the ledger row; False means another delivery already owns the event."""
    insert = dialect_insert(db)
    statement = (
        insert(ProcessedWebhookEvent)
        .values(event_id=event_id, event_type=event_type, result=RESULT_PROCESSED, processed_at=utcnow())
        .on_conflict_do_nothing(index_elements=[ProcessedWebhookEvent.event_id])
    )
    return bool(db.execute(statement).rowcount)


def release_failed(db: Session, event_id: str) -> bool:
    """Drop a failed entry so it can be claimed again for replay."""
    result = db.execute(
        delete(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.event_id == event_id,
            ProcessedWebhookEvent.result == RESULT_FAILED,
        )
    )
    return bool(result.rowcount)


def mark_result(db: Session, event_id: str, *, result: str, account_id: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"result": result}
    if account_id:
        values["account_id"] = account_id
    db.execute(update(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id).values(**values))


def record_failure(
    db: Session,
    *,
    event_id: str,
    event_type: str,
    error: str,
    payload: Optional[Dict[str, Any]],
    account_id: Optional[str] = None,
) -> None:
    """Persist a failed delivery with its payload so an operator can replay it."""
    insert = dialect_insert(db)
    values = {
        "event_type": event_type,
        "result": RESULT_FAILED,
        "account_id": account_id,
        "error": error[:2000],
        "payload": payload,
        "processed_at": utcnow(),
    }
    statement = (
        insert(ProcessedWebhookEvent)
        .values(event_id=event_id, **values)
        .on_conflict_do_update(index_elements=[ProcessedWebhookEvent.event_id], set_=values)
    )
    db.execute(statement)


def list_failed(db: Session, *, limit: int = 100) -> List[ProcessedWebhookEvent]:
    statement = (
        select(ProcessedWebhookEvent)
        .where(ProcessedWebhookEvent.result == RESULT_FAILED)
        .order_by(ProcessedWebhookEvent.processed_at.desc())
        .limit(limit)
    )
    return list(db.execute(statement).scalars())


def prune(db: Session, *, retention_hours: int, now: Optional[datetime] = None) -> int:
    """Delete settled entries older than the retention window; failed entries are kept."""
    cutoff = (now or utcnow()) - timedelta(hours=retention_hours)
    result = db.execute(
        delete(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.processed_at < cutoff,
            ProcessedWebhookEvent.result != RESULT_FAILED,
        )
    )
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("Pruned %d webhook ledger entries older than %s.", removed, cutoff.isoformat())
    return removed


__all__ = [
    "RESULT_FAILED",
    "RESULT_IGNORED",
    "RESULT_PROCESSED",
    "RESULT_SKIPPED",
    "claim_event",
    "get_entry",
    "has_processed",
    "list_failed",
    "mark_result",
    "prune",
    "record_failure",
    "release_failed",
]
