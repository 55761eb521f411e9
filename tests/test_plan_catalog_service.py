from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.plan_constants import PlanTier
from services.plan_catalog_service import (
    UNLIMITED,
    build_plan_catalog,
    features_for_tier,
    free_features,
    load_plan_catalog,
)


def test_default_catalog_lists_three_tiers() -> None:
    catalog = load_plan_catalog()
    plans = catalog.plans()
    assert [plan.tier for plan in plans] == [PlanTier.FREE, PlanTier.PRO, PlanTier.PREMIUM]
    pro = catalog.for_tier("pro")
    assert pro.monthly_price == 999
    assert pro.yearly_price == 9999
    assert pro.is_popular is True
    assert catalog.for_tier(PlanTier.FREE).is_paid is False


def test_match_price_resolves_tier_and_interval(settings) -> None:
    catalog = build_plan_catalog(settings)
    monthly = catalog.match_price(settings.premium_monthly_price_id)
    yearly = catalog.match_price(settings.premium_yearly_price_id)
    assert monthly is not None and monthly.plan.tier == PlanTier.PREMIUM and monthly.is_yearly is False
    assert yearly is not None and yearly.is_yearly is True
    assert catalog.match_price("price_unknown") is None
    assert catalog.match_price(None) is None
    assert catalog.price_id_for(PlanTier.PRO, is_yearly=True) == settings.pro_yearly_price_id


def test_price_ids_come_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STRIPE_PRO_MONTHLY_PRICE_ID", "price_live_pro")
    catalog = load_plan_catalog()
    match = catalog.match_price("price_live_pro")
    assert match is not None
    assert match.plan.tier == PlanTier.PRO


def test_feature_sets_per_tier() -> None:
    free = free_features()
    assert free["max_gig_applications"] == 5
    assert free["can_boost_profile"] is False
    assert features_for_tier("pro")["max_gig_applications"] == 20
    premium = features_for_tier(PlanTier.PREMIUM)
    assert premium["max_profile_boosts"] == UNLIMITED
    assert set(free) == set(premium)


def test_feature_copy_is_independent() -> None:
    features = features_for_tier("pro")
    features["max_gig_applications"] = 999
    assert features_for_tier("pro")["max_gig_applications"] == 20


def test_override_file_adjusts_display_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "plans.json"
    target.write_text(
        json.dumps({"premium": {"monthlyPrice": 2499, "isAvailable": False}, "pro": {"features": ["Boosts"]}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("PLAN_CATALOG_FILE", str(target))
    catalog = load_plan_catalog()

    assert [plan.id for plan in catalog.plans()] == ["free", "pro"]
    assert catalog.for_tier("premium").monthly_price == 2499
    assert catalog.for_tier("pro").features == ("Boosts",)
    # Entitlements are not overridable.
    assert catalog.for_tier("pro").entitlements["max_gig_applications"] == 20


def test_missing_override_file_keeps_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLAN_CATALOG_FILE", str(tmp_path / "missing.json"))
    assert len(load_plan_catalog().plans()) == 3
