"""Static plan catalog: tiers, prices, processor price ids and entitlement sets."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from core.billing_settings import BillingSettings, get_billing_settings
from core.env import env_str
from core.logging import get_logger
from core.plan_constants import PlanTier

logger = get_logger(__name__)

LimitValue = Union[int, bool]
UNLIMITED = -1

_TIER_ENTITLEMENTS: Dict[PlanTier, Dict[str, LimitValue]] = {
    PlanTier.FREE: {
        "can_boost_profile": False,
        "max_profile_boosts": 0,
        "can_see_views": False,
        "can_see_likes": False,
        "can_use_advanced_filters": False,
        "can_message_first": False,
        "can_see_read_receipts": False,
        "max_gig_applications": 5,
        "can_access_analytics": False,
        "max_media_uploads": 3,
    },
    PlanTier.PRO: {
        "can_boost_profile": True,
        "max_profile_boosts": 5,
        "can_see_views": True,
        "can_see_likes": True,
        "can_use_advanced_filters": True,
        "can_message_first": True,
        "can_see_read_receipts": True,
        "max_gig_applications": 20,
        "can_access_analytics": True,
        "max_media_uploads": 10,
    },
    PlanTier.PREMIUM: {
        "can_boost_profile": True,
        "max_profile_boosts": UNLIMITED,
        "can_see_views": True,
        "can_see_likes": True,
        "can_use_advanced_filters": True,
        "can_message_first": True,
        "can_see_read_receipts": True,
        "max_gig_applications": UNLIMITED,
        "can_access_analytics": True,
        "max_media_uploads": UNLIMITED,
    },
}

_DISPLAY_FEATURES: Dict[PlanTier, Tuple[str, ...]] = {
    PlanTier.FREE: (
        "Create artist/venue profile",
        "Basic discovery swiping",
        "5 gig applications per month",
        "3 media uploads",
        "Receive messages",
    ),
    PlanTier.PRO: (
        "Everything in Free",
        "Profile boosting (5/month)",
        "See who viewed your profile",
        "See who liked you",
        "Advanced filters",
        "Message first",
        "Read receipts",
        "20 gig applications/month",
        "Analytics dashboard",
        "10 media uploads",
    ),
    PlanTier.PREMIUM: (
        "Everything in Pro",
        "Unlimited profile boosting",
        "Unlimited gig applications",
        "Unlimited media uploads",
        "Priority placement in search",
        "Featured profile badge",
        "Exclusive gig opportunities",
        "VIP support",
    ),
}


@dataclass(frozen=True)
class Plan:
    id: str
    tier: PlanTier
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    price_id_monthly: Optional[str]
    price_id_yearly: Optional[str]
    features: Tuple[str, ...]
    entitlements: Mapping[str, LimitValue]
    is_popular: bool = False
    is_available: bool = True

    @property
    def is_paid(self) -> bool:
        return self.tier != PlanTier.FREE


@dataclass(frozen=True)
class PriceMatch:
    plan: Plan
    is_yearly: bool


class PlanCatalog:
    """Immutable view over the configured plans."""

    def __init__(self, plans: List[Plan]) -> None:
        self._plans: Tuple[Plan, ...] = tuple(plans)
        self._by_tier: Dict[PlanTier, Plan] = {plan.tier: plan for plan in plans}
        self._by_price: Dict[str, PriceMatch] = {}
        for plan in plans:
            if plan.price_id_monthly:
                self._by_price[plan.price_id_monthly] = PriceMatch(plan=plan, is_yearly=False)
            if plan.price_id_yearly:
                self._by_price[plan.price_id_yearly] = PriceMatch(plan=plan, is_yearly=True)

    def plans(self, *, available_only: bool = True) -> List[Plan]:
        return [plan for plan in self._plans if plan.is_available or not available_only]

    def get(self, plan_id: str) -> Optional[Plan]:
        for plan in self._plans:
            if plan.id == plan_id:
                return plan
        return None

    def for_tier(self, tier: Union[PlanTier, str]) -> Plan:
        return self._by_tier[PlanTier(tier)]

    def match_price(self, price_id: Optional[str]) -> Optional[PriceMatch]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def price_id_for(self, tier: Union[PlanTier, str], *, is_yearly: bool) -> Optional[str]:
        plan = self.for_tier(tier)
        return plan.price_id_yearly if is_yearly else plan.price_id_monthly


def _build_default_plans(settings: BillingSettings) -> List[Plan]:
    def _entitlements(tier: PlanTier) -> Mapping[str, LimitValue]:
        return MappingProxyType(dict(_TIER_ENTITLEMENTS[tier]))

    return [
        Plan(
            id="free",
            tier=PlanTier.FREE,
            name="Free",
            description="Get started with basic features",
            monthly_price=0,
            yearly_price=0,
            price_id_monthly=None,
            price_id_yearly=None,
            features=_DISPLAY_FEATURES[PlanTier.FREE],
            entitlements=_entitlements(PlanTier.FREE),
        ),
        Plan(
            id="pro",
            tier=PlanTier.PRO,
            name="Pro",
            description="For serious musicians and venues",
            monthly_price=999,
            yearly_price=9999,
            price_id_monthly=settings.pro_monthly_price_id,
            price_id_yearly=settings.pro_yearly_price_id,
            features=_DISPLAY_FEATURES[PlanTier.PRO],
            entitlements=_entitlements(PlanTier.PRO),
            is_popular=True,
        ),
        Plan(
            id="premium",
            tier=PlanTier.PREMIUM,
            name="Premium",
            description="For professional artists and venues",
            monthly_price=1999,
            yearly_price=19999,
            price_id_monthly=settings.premium_monthly_price_id,
            price_id_yearly=settings.premium_yearly_price_id,
            features=_DISPLAY_FEATURES[PlanTier.PREMIUM],
            entitlements=_entitlements(PlanTier.PREMIUM),
        ),
    ]


def _apply_overrides(plans: List[Plan], path: Path) -> List[Plan]:
    """Apply display/price overrides from a JSON document keyed by plan id."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Plan catalog override file %s does not exist; using defaults.", path)
        return plans
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read plan catalog overrides from %s: %s", path, exc)
        return plans
    if not isinstance(document, dict):
        logger.warning("Plan catalog override file %s must contain an object.", path)
        return plans

    updated: List[Plan] = []
    for plan in plans:
        raw: Any = document.get(plan.id)
        if not isinstance(raw, dict):
            updated.append(plan)
            continue
        changes: Dict[str, Any] = {}
        for key, field_name in (("monthlyPrice", "monthly_price"), ("yearlyPrice", "yearly_price")):
            value = raw.get(key)
            if isinstance(value, int) and value >= 0:
                changes[field_name] = value
        if isinstance(raw.get("isAvailable"), bool):
            changes["is_available"] = raw["isAvailable"]
        if isinstance(raw.get("isPopular"), bool):
            changes["is_popular"] = raw["isPopular"]
        features = raw.get("features")
        if isinstance(features, list) and all(isinstance(item, str) for item in features):
            changes["features"] = tuple(features)
        updated.append(replace(plan, **changes) if changes else plan)
    return updated


def build_plan_catalog(settings: Optional[BillingSettings] = None) -> PlanCatalog:
    plans = _build_default_plans(settings or get_billing_settings())
    override_path = env_str("PLAN_CATALOG_FILE")
    if override_path:
        plans = _apply_overrides(plans, Path(override_path))
    return PlanCatalog(plans)


@lru_cache(maxsize=1)
def load_plan_catalog() -> PlanCatalog:
    """Catalog is loaded once per process."""
    return build_plan_catalog()


def features_for_tier(tier: Union[PlanTier, str]) -> Dict[str, LimitValue]:
    """Return a mutable copy of the tier's entitlement set."""
    return dict(_TIER_ENTITLEMENTS[PlanTier(tier)])


def free_features() -> Dict[str, LimitValue]:
    return features_for_tier(PlanTier.FREE)


__all__ = [
    "LimitValue",
    "Plan",
    "PlanCatalog",
    "PriceMatch",
    "UNLIMITED",
    "build_plan_catalog",
    "features_for_tier",
    "free_features",
    "load_plan_catalog",
]
