from __future__ import annotations

from datetime import timedelta

import pytest

from core.clock import utcnow
from core.plan_constants import BillingSource
from services import subscription_store
from services.billing_errors import InvalidInputError
from services.entitlement_service import entitlement_service
from services.subscription_state import activation_changes, cancellation_changes


def _activate(db, account_id: str, tier: str) -> None:
    now = utcnow()
    subscription_store.upsert_record(
        db,
        account_id,
        activation_changes(tier=tier, is_yearly=False, period_start=now - timedelta(minutes=1), source=BillingSource.CARD),
        now=now,
    )
    db.commit()


def test_account_without_record_gets_free_features(db_session) -> None:
    resolved = entitlement_service.get(db_session, "acct-new")
    assert resolved.tier == "free"
    assert resolved.is_active is False
    assert resolved.status is None
    assert resolved.features["max_gig_applications"] == 5


def test_gig_application_limit_lifts_after_upgrade(db_session) -> None:
    for _ in range(5):
        assert entitlement_service.consume(db_session, "acct-1", "gigApplications").allowed
    db_session.commit()

    blocked = entitlement_service.check_usage_limit(db_session, "acct-1", "gigApplications")
    assert blocked.allowed is False
    assert blocked.remaining == 0

    _activate(db_session, "acct-1", "pro")

    lifted = entitlement_service.check_usage_limit(db_session, "acct-1", "gigApplications")
    assert lifted.allowed is True
    assert lifted.remaining == 20
    assert lifted.limit == 20


def test_consume_stops_at_limit(db_session) -> None:
    for _ in range(3):
        entitlement_service.consume(db_session, "acct-1", "media_uploads")
    decision = entitlement_service.consume(db_session, "acct-1", "media_uploads")
    assert decision.allowed is False
    assert decision.used == 3
    assert decision.remaining == 0


def test_unlimited_premium_usage(db_session) -> None:
    _activate(db_session, "acct-1", "premium")
    for _ in range(30):
        decision = entitlement_service.consume(db_session, "acct-1", "media_uploads")
    assert decision.allowed is True
    assert decision.remaining == -1
    assert entitlement_service.check_usage_limit(db_session, "acct-1", "media_uploads").remaining == -1


def test_check_access_flags_and_limits(db_session) -> None:
    assert entitlement_service.check_access(db_session, "acct-1", "can_see_views").allowed is False
    _activate(db_session, "acct-1", "pro")
    assert entitlement_service.check_access(db_session, "acct-1", "can_see_views").allowed is True
    limit = entitlement_service.check_access(db_session, "acct-1", "max_profile_boosts")
    assert limit.allowed is True and limit.limit == 5


def test_unknown_feature_is_rejected(db_session) -> None:
    with pytest.raises(InvalidInputError) as excinfo:
        entitlement_service.check_access(db_session, "acct-1", "can_fly")
    assert excinfo.value.code == "billing.unknown_feature"


def test_canceled_record_falls_back_to_free(db_session) -> None:
    _activate(db_session, "acct-1", "premium")
    subscription_store.upsert_record(db_session, "acct-1", cancellation_changes(utcnow()))
    db_session.commit()
    resolved = entitlement_service.get(db_session, "acct-1")
    assert resolved.tier == "free"
    assert resolved.status == "canceled"
    assert resolved.features["can_boost_profile"] is False


def test_past_due_keeps_entitlements(db_session) -> None:
    _activate(db_session, "acct-1", "pro")
    subscription_store.update_record(db_session, "acct-1", {"status": "past_due"})
    db_session.commit()
    resolved = entitlement_service.get(db_session, "acct-1")
    assert resolved.is_active is True
    assert resolved.tier == "pro"


def test_stale_feature_snapshot_uses_tier_defaults(db_session) -> None:
    _activate(db_session, "acct-1", "pro")
    subscription_store.update_record(db_session, "acct-1", {"features": {"legacy_flag": True}})
    db_session.commit()
    resolved = entitlement_service.get(db_session, "acct-1")
    assert resolved.features["max_gig_applications"] == 20
    assert "legacy_flag" not in resolved.features


def test_boosts_require_paid_plan(db_session) -> None:
    denied = entitlement_service.use_boost(db_session, "acct-1")
    assert denied.allowed is False

    _activate(db_session, "acct-1", "pro")
    for _ in range(5):
        assert entitlement_service.use_boost(db_session, "acct-1").allowed
    assert entitlement_service.use_boost(db_session, "acct-1").allowed is False
    assert entitlement_service.remaining_boosts(db_session, "acct-1").remaining == 0
