"""Shared plan tier and subscription status constants."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Sequence


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class BillingSource(str, Enum):
    CARD = "card"
    APPLE = "apple"
    GOOGLE = "google"
    TRIAL = "trial"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


SUPPORTED_PLAN_TIERS: Sequence[PlanTier] = tuple(PlanTier)
PAID_PLAN_TIERS: FrozenSet[PlanTier] = frozenset({PlanTier.PRO, PlanTier.PREMIUM})

# Statuses that keep the tier's entitlements; past_due is the dunning grace period.
ENTITLED_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)

__all__ = [
    "BillingSource",
    "ENTITLED_STATUSES",
    "PAID_PLAN_TIERS",
    "PlanTier",
    "SUPPORTED_PLAN_TIERS",
    "SubscriptionStatus",
]
