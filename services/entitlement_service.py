"""Feature entitlement resolution over locally reconciled subscription state.

Nothing here calls the payment processor: feature gating on the request path
reads only the subscription record's feature snapshot and usage counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from sqlalchemy.orm import Session

from core.clock import utcnow
from core.plan_constants import PlanTier
from models.subscription import SubscriptionRecord
from services import subscription_store
from services.billing_errors import InvalidInputError
from services.plan_catalog_service import UNLIMITED, LimitValue, features_for_tier, free_features
from services.subscription_state import is_entitled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlements:
    tier: str
    status: Optional[str]
    is_active: bool
    features: Mapping[str, LimitValue]


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    remaining: Optional[int]
    limit: Optional[int] = None
    used: Optional[int] = None


def _snapshot_features(record: SubscriptionRecord) -> Dict[str, LimitValue]:
    expected = features_for_tier(record.tier)
    snapshot = record.features if isinstance(record.features, dict) else {}
    if set(snapshot) != set(expected):
        # Snapshot written before a catalog change; trust the tier.
        logger.debug("Feature snapshot for account=%s is stale; using tier defaults.", record.account_id)
        return expected
    return dict(snapshot)


def _limit_decision(limit: int, used: int) -> EntitlementDecision:
    if limit == UNLIMITED:
        return EntitlementDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, used=used)
    remaining = max(limit - used, 0)
    return EntitlementDecision(allowed=used < limit, remaining=remaining, limit=limit, used=used)


class EntitlementService:
    """Resolve tier features and usage limits for an account."""

    def entitlements_for(self, record: Optional[SubscriptionRecord]) -> Entitlements:
        if record is None or not is_entitled(record.status, record.tier):
            return Entitlements(
                tier=PlanTier.FREE.value,
                status=record.status if record is not None else None,
                is_active=False,
                features=free_features(),
            )
        return Entitlements(
            tier=record.tier,
            status=record.status,
            is_active=True,
            features=_snapshot_features(record),
        )

    def get(self, db: Session, account_id: str) -> Entitlements:
        return self.entitlements_for(subscription_store.get_record(db, account_id))

    def check_access(self, db: Session, account_id: str, feature: str) -> EntitlementDecision:
        """Evaluate a single flag (``can_*``) or limit (``max_*``) for the account."""
        features = self.get(db, account_id).features
        if feature not in features:
            raise InvalidInputError(f"Unknown feature '{feature}'.", code="billing.unknown_feature")
        value = features[feature]
        if isinstance(value, bool):
            return EntitlementDecision(allowed=value, remaining=None)
        limit = int(value)
        if limit == UNLIMITED:
            return EntitlementDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED)
        return EntitlementDecision(allowed=limit > 0, remaining=limit, limit=limit)

    def check_usage_limit(self, db: Session, account_id: str, counter_name: str) -> EntitlementDecision:
        """Compare the named usage counter against the tier's limit (``-1`` means unlimited)."""
        counter = subscription_store.resolve_counter(counter_name)
        record = subscription_store.get_record(db, account_id)
        features = self.entitlements_for(record).features
        limit = int(features.get(counter.limit_key, 0))
        used = subscription_store.read_usage(record, counter, now=utcnow())
        return _limit_decision(limit, used)

    def consume(self, db: Session, account_id: str, counter_name: str, *, amount: int = 1) -> EntitlementDecision:
        """Atomically record usage if the limit allows it. The caller commits."""
        counter = subscription_store.resolve_counter(counter_name)
        now = utcnow()
        record = subscription_store.get_record(db, account_id)
        limit = int(self.entitlements_for(record).features.get(counter.limit_key, 0))
        if limit != UNLIMITED and limit <= 0:
            return _limit_decision(limit, subscription_store.read_usage(record, counter, now=now))

        used = subscription_store.increment_usage(db, account_id, counter, amount=amount, limit=limit, now=now)
        if used is None:
            current = subscription_store.read_usage(subscription_store.get_record(db, account_id), counter, now=now)
            logger.info("Usage limit reached for account=%s counter=%s.", account_id, counter.name)
            return EntitlementDecision(allowed=False, remaining=max(limit - current, 0), limit=limit, used=current)
        if limit == UNLIMITED:
            return EntitlementDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, used=used)
        return EntitlementDecision(allowed=True, remaining=max(limit - used, 0), limit=limit, used=used)

    def remaining_boosts(self, db: Session, account_id: str) -> EntitlementDecision:
        return self.check_usage_limit(db, account_id, "boosts")

    def use_boost(self, db: Session, account_id: str) -> EntitlementDecision:
        if not self.check_access(db, account_id, "can_boost_profile").allowed:
            return EntitlementDecision(allowed=False, remaining=0, limit=0, used=0)
        return self.consume(db, account_id, "boosts")


entitlement_service = EntitlementService()

__all__ = [
    "EntitlementDecision",
    "EntitlementService",
    "Entitlements",
    "entitlement_service",
]
