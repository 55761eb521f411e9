"""Subscription state machine: allowed transitions and the field changes each one writes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from core.plan_constants import (
    ENTITLED_STATUSES,
    BillingSource,
    PlanTier,
    SubscriptionStatus,
)
from services.billing_errors import ConflictError, InvalidInputError
from services.plan_catalog_service import features_for_tier, free_features

logger = logging.getLogger(__name__)

MONTHLY_PERIOD_DAYS = 30
YEARLY_PERIOD_DAYS = 365

ALLOWED_TRANSITIONS: Dict[Optional[SubscriptionStatus], FrozenSet[SubscriptionStatus]] = {
    None: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}),
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID}
    ),
    SubscriptionStatus.UNPAID: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}),
}

_PROCESSOR_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

StatusLike = Union[SubscriptionStatus, str, None]


def coerce_status(value: StatusLike) -> Optional[SubscriptionStatus]:
    if value is None or isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def map_processor_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    """Translate a processor subscription status; ``None`` means leave the status alone."""
    if not value:
        return None
    mapped = _PROCESSOR_STATUS_MAP.get(value.strip().lower())
    if mapped is None:
        logger.warning("Unrecognised processor subscription status '%s'; keeping current status.", value)
    return mapped


def is_allowed_transition(current: StatusLike, target: StatusLike) -> bool:
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if target_status is None:
        return False
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


def ensure_transition(current: StatusLike, target: StatusLike) -> None:
    """Reject user-initiated transitions outside the state graph."""
    if not is_allowed_transition(current, target):
        raise ConflictError(
            f"Cannot move subscription from {coerce_status(current) or 'none'} to {coerce_status(target)}.",
            code="billing.invalid_transition",
        )


def is_entitled(status: StatusLike, tier: Union[PlanTier, str, None]) -> bool:
    """Whether the record grants its tier's entitlements."""
    status_value = coerce_status(status)
    if status_value is None or tier in (None, PlanTier.FREE, PlanTier.FREE.value):
        return False
    return status_value in ENTITLED_STATUSES


def default_period_end(start: datetime, *, is_yearly: bool) -> datetime:
    days = YEARLY_PERIOD_DAYS if is_yearly else MONTHLY_PERIOD_DAYS
    return start + timedelta(days=days)


def validate_changes(changes: Mapping[str, Any]) -> None:
    status = coerce_status(changes.get("status"))
    tier = changes.get("tier")
    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) and tier in (
        PlanTier.FREE,
        PlanTier.FREE.value,
    ):
        raise InvalidInputError("An active or trialing subscription requires a paid tier.")


def activation_changes(
    *,
    tier: Union[PlanTier, str],
    is_yearly: bool,
    period_start: datetime,
    period_end: Optional[datetime] = None,
    source: BillingSource,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    subscription_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Fields written when a paid plan is established or renewed."""
    tier_value = PlanTier(tier)
    if tier_value == PlanTier.FREE:
        raise InvalidInputError("The free tier cannot be purchased.")
    changes: Dict[str, Any] = {
        "status": status.value,
        "tier": tier_value.value,
        "features": features_for_tier(tier_value),
        "is_yearly_billing": is_yearly,
        "current_period_start": period_start,
        "current_period_end": period_end or default_period_end(period_start, is_yearly=is_yearly),
        "cancel_at_period_end": False,
        "canceled_at": None,
        "billing_source": source.value,
    }
    if subscription_id:
        changes["processor_subscription_id"] = subscription_id
    if customer_id:
        changes["processor_customer_id"] = customer_id
    return changes


def trial_changes(*, tier: Union[PlanTier, str], trial_start: datetime, trial_end: datetime) -> Dict[str, Any]:
    changes = activation_changes(
        tier=tier,
        is_yearly=False,
        period_start=trial_start,
        period_end=trial_end,
        source=BillingSource.TRIAL,
        status=SubscriptionStatus.TRIALING,
    )
    changes.update({"trial_start": trial_start, "trial_end": trial_end})
    return changes


def cancellation_changes(now: datetime) -> Dict[str, Any]:
    """Entering ``canceled`` always drops the account back to the free set."""
    return {
        "status": SubscriptionStatus.CANCELED.value,
        "tier": PlanTier.FREE.value,
        "features": free_features(),
        "cancel_at_period_end": False,
        "canceled_at": now,
    }


def past_due_changes() -> Dict[str, Any]:
    return {"status": SubscriptionStatus.PAST_DUE.value}


def scheduled_cancel_changes(now: datetime) -> Dict[str, Any]:
    return {"cancel_at_period_end": True, "canceled_at": now}


def resume_changes() -> Dict[str, Any]:
    return {"cancel_at_period_end": False, "canceled_at": None}


def tier_changes(tier: Union[PlanTier, str], *, is_yearly: bool) -> Dict[str, Any]:
    tier_value = PlanTier(tier)
    return {
        "tier": tier_value.value,
        "features": features_for_tier(tier_value),
        "is_yearly_billing": is_yearly,
    }


__all__ = [
    "ALLOWED_TRANSITIONS",
    "activation_changes",
    "cancellation_changes",
    "coerce_status",
    "default_period_end",
    "ensure_transition",
    "is_allowed_transition",
    "is_entitled",
    "map_processor_status",
    "past_due_changes",
    "resume_changes",
    "scheduled_cancel_changes",
    "tier_changes",
    "trial_changes",
    "validate_changes",
]
