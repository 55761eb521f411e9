from __future__ import annotations

from datetime import datetime, timezone

import pytest

from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from services.billing_errors import ConflictError, InvalidInputError
from services.subscription_state import (
    activation_changes,
    cancellation_changes,
    ensure_transition,
    is_allowed_transition,
    is_entitled,
    map_processor_status,
    validate_changes,
)

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (None, "active", True),
        (None, "past_due", False),
        ("trialing", "active", True),
        ("active", "past_due", True),
        ("active", "paused", True),
        ("past_due", "active", True),
        ("past_due", "unpaid", True),
        ("paused", "active", True),
        ("canceled", "active", True),
        ("canceled", "past_due", False),
        ("unpaid", "paused", False),
        ("active", "active", True),
    ],
)
def test_transition_graph(current, target, allowed) -> None:
    assert is_allowed_transition(current, target) is allowed


def test_ensure_transition_raises_conflict() -> None:
    with pytest.raises(ConflictError) as excinfo:
        ensure_transition(SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED)
    assert excinfo.value.code == "billing.invalid_transition"


def test_entitlement_follows_status_and_tier() -> None:
    assert is_entitled("active", "pro")
    assert is_entitled("past_due", "premium")
    assert is_entitled("trialing", PlanTier.PRO)
    assert not is_entitled("active", "free")
    assert not is_entitled("canceled", "pro")
    assert not is_entitled("paused", "pro")
    assert not is_entitled(None, "pro")


def test_processor_status_mapping() -> None:
    assert map_processor_status("incomplete") == SubscriptionStatus.UNPAID
    assert map_processor_status("incomplete_expired") == SubscriptionStatus.CANCELED
    assert map_processor_status("ACTIVE") == SubscriptionStatus.ACTIVE
    assert map_processor_status("mystery") is None
    assert map_processor_status(None) is None


def test_cancellation_resets_to_free() -> None:
    changes = cancellation_changes(NOW)
    assert changes["status"] == "canceled"
    assert changes["tier"] == "free"
    assert changes["features"]["max_gig_applications"] == 5
    assert changes["cancel_at_period_end"] is False
    assert changes["canceled_at"] == NOW


def test_activation_rejects_free_tier() -> None:
    with pytest.raises(InvalidInputError):
        activation_changes(tier="free", is_yearly=False, period_start=NOW, source=BillingSource.CARD)


def test_activation_defaults_period_end() -> None:
    changes = activation_changes(tier="pro", is_yearly=True, period_start=NOW, source=BillingSource.CARD)
    assert (changes["current_period_end"] - NOW).days == 365
    assert changes["features"]["max_gig_applications"] == 20


def test_active_free_combination_is_rejected() -> None:
    with pytest.raises(InvalidInputError):
        validate_changes({"status": "active", "tier": "free"})
    validate_changes({"status": "canceled", "tier": "free"})
