"""Apply the processor's view of a subscription to the local record."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.clock import ensure_utc, utcnow
from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from models.subscription import SubscriptionRecord
from services import subscription_store
from services.billing_errors import InvalidInputError, NotFoundError
from services.payments.stripe_gateway import StripeGateway
from services.payments.webhook_events import SubscriptionSnapshot, parse_subscription
from services.plan_catalog_service import PlanCatalog, PriceMatch, load_plan_catalog
from services.subscription_state import (
    cancellation_changes,
    default_period_end,
    is_allowed_transition,
    is_entitled,
    map_processor_status,
)

logger = logging.getLogger(__name__)

_TIERED_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
    }
)


def is_stale_event(record: Optional[SubscriptionRecord], event_at: Optional[datetime]) -> bool:
    """True when ``event_at`` predates the newest subscription event already applied."""
    if record is None or event_at is None:
        return False
    last_seen = ensure_utc(record.last_processor_event_at)
    return last_seen is not None and ensure_utc(event_at) < last_seen


def belongs_to_other_subscription(record: Optional[SubscriptionRecord], subscription_id: Optional[str]) -> bool:
    """True when the record is live on a different subscription than ``subscription_id``."""
    if record is None or not subscription_id:
        return False
    if not is_entitled(record.status, record.tier):
        return False
    return bool(record.processor_subscription_id) and record.processor_subscription_id != subscription_id


def is_ended_subscription(record: Optional[SubscriptionRecord], subscription_id: Optional[str]) -> bool:
    """True when ``subscription_id`` is the record's own subscription and it was already canceled."""
    if record is None or not subscription_id:
        return False
    return record.status == SubscriptionStatus.CANCELED.value and record.processor_subscription_id == subscription_id


def snapshot_changes(
    record: Optional[SubscriptionRecord],
    snapshot: SubscriptionSnapshot,
    *,
    catalog: PlanCatalog,
    now: datetime,
) -> Optional[Dict[str, Any]]:
    """Field changes implied by ``snapshot``; ``None`` when nothing can be applied safely."""
    status = SubscriptionStatus.PAUSED if snapshot.is_paused else map_processor_status(snapshot.status)
    if status is None:
        return None
    if status == SubscriptionStatus.CANCELED:
        return cancellation_changes(snapshot.canceled_at or now)

    current_status = record.status if record is not None else None
    if not is_allowed_transition(current_status, status):
        # Processor-reported statuses are authoritative.
        logger.info("Applying processor status %s over local %s.", status.value, current_status)

    match: Optional[PriceMatch] = catalog.match_price(snapshot.price_id)
    current_tier = record.tier if record is not None else PlanTier.FREE.value
    if match is None and current_tier == PlanTier.FREE.value:
        logger.warning(
            "Subscription %s uses unknown price %s and the record has no paid tier; skipping.",
            snapshot.subscription_id,
            snapshot.price_id,
        )
        return None

    changes: Dict[str, Any] = {
        "status": status.value,
        "processor_subscription_id": snapshot.subscription_id,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "canceled_at": snapshot.canceled_at if snapshot.cancel_at_period_end else None,
        "billing_source": BillingSource.CARD.value,
    }
    if snapshot.customer_id:
        changes["processor_customer_id"] = snapshot.customer_id
    if match is not None and status in _TIERED_STATUSES:
        tier = match.plan.tier
        changes.update(
            {
                "tier": tier.value,
                "features": dict(match.plan.entitlements),
                "is_yearly_billing": match.is_yearly,
            }
        )
    if snapshot.current_period_start is not None:
        changes["current_period_start"] = snapshot.current_period_start
        is_yearly = match.is_yearly if match is not None else bool(record is not None and record.is_yearly_billing)
        changes["current_period_end"] = snapshot.current_period_end or default_period_end(
            snapshot.current_period_start, is_yearly=is_yearly
        )
    if snapshot.trial_start is not None:
        changes["trial_start"] = snapshot.trial_start
    if snapshot.trial_end is not None:
        changes["trial_end"] = snapshot.trial_end
    return changes


def apply_subscription_snapshot(
    db: Session,
    account_id: str,
    snapshot: SubscriptionSnapshot,
    *,
    event_at: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> Optional[SubscriptionRecord]:
    """Write the processor's subscription state to the account's record."""
    now = now or utcnow()
    record = subscription_store.get_record(db, account_id)
    changes = snapshot_changes(record, snapshot, catalog=catalog or load_plan_catalog(), now=now)
    if changes is None:
        return None
    if event_at is not None:
        changes["last_processor_event_at"] = event_at
    updated = subscription_store.upsert_record(db, account_id, changes, now=now)
    logger.info(
        "Applied processor subscription %s to account=%s (status=%s tier=%s).",
        snapshot.subscription_id,
        account_id,
        updated.status,
        updated.tier,
    )
    return updated


def sync_from_processor(
    db: Session,
    account_id: str,
    gateway: StripeGateway,
    *,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionRecord:
    """Re-read the processor subscription and apply it; the caller commits."""
    record = subscription_store.require_record(db, account_id)
    if subscription_store.is_iap_record(record):
        raise InvalidInputError(
            "This subscription is billed through an app store.",
            code="billing.iap_managed",
        )
    if not record.processor_subscription_id:
        return record
    try:
        payload = gateway.retrieve_subscription(record.processor_subscription_id)
    except NotFoundError:
        logger.warning(
            "Processor no longer knows subscription %s; canceling account=%s.",
            record.processor_subscription_id,
            account_id,
        )
        return subscription_store.upsert_record(db, account_id, cancellation_changes(utcnow()))
    snapshot = parse_subscription(payload)
    updated = apply_subscription_snapshot(db, account_id, snapshot, catalog=catalog)
    return updated or subscription_store.require_record(db, account_id)


__all__ = [
    "apply_subscription_snapshot",
    "belongs_to_other_subscription",
    "is_ended_subscription",
    "is_stale_event",
    "snapshot_changes",
    "sync_from_processor",
]
