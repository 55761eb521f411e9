from __future__ import annotations

from datetime import timedelta

import pytest

from billing_fakes import stripe_subscription
from core.clock import ensure_utc, utcnow
from core.plan_constants import BillingSource
from services import subscription_store
from services.billing_errors import ConflictError, ExternalServiceError, InvalidInputError, NotFoundError
from services.billing_maintenance import sweep_lapsed_subscriptions
from services.entitlement_service import entitlement_service
from services.subscription_service import SubscriptionService
from services.subscription_state import activation_changes


@pytest.fixture()
def service(gateway, retry_scheduler, notifier, catalog) -> SubscriptionService:
    return SubscriptionService(
        gateway_factory=lambda: gateway,
        retry_scheduler=retry_scheduler,
        notifier=notifier,
        catalog=catalog,
        trial_days=14,
    )


@pytest.fixture()
def subscribed(db_session, make_account):
    make_account("acct-1", customer_id="cus_1")
    record = subscription_store.upsert_record(
        db_session,
        "acct-1",
        activation_changes(
            tier="pro",
            is_yearly=False,
            period_start=utcnow() - timedelta(days=1),
            source=BillingSource.CARD,
            subscription_id="sub_1",
            customer_id="cus_1",
        ),
    )
    db_session.commit()
    return record


def test_upgrade_applies_new_entitlements_immediately(db_session, subscribed, service, gateway) -> None:
    updated = service.change_plan(db_session, "acct-1", price_id="price_premium_monthly", is_yearly=False)

    assert updated.tier == "premium"
    assert updated.status == "active"
    assert gateway.call_names() == ["update_subscription_price"]
    decision = entitlement_service.check_usage_limit(db_session, "acct-1", "gigApplications")
    assert decision.remaining == -1


def test_change_to_same_plan_is_rejected(db_session, subscribed, service, gateway) -> None:
    with pytest.raises(ConflictError) as excinfo:
        service.change_plan(db_session, "acct-1", price_id="price_pro_monthly", is_yearly=False)
    assert excinfo.value.code == "billing.same_plan"
    assert gateway.calls == []


def test_processor_failure_leaves_plan_untouched(db_session, subscribed, service, gateway) -> None:
    gateway.fail_with = ExternalServiceError("processor down")

    with pytest.raises(ExternalServiceError):
        service.change_plan(db_session, "acct-1", price_id="price_premium_monthly", is_yearly=False)

    assert subscription_store.get_record(db_session, "acct-1").tier == "pro"


def test_cancel_at_period_end_keeps_access_until_sweep(db_session, subscribed, service, gateway, session_factory, notifier) -> None:
    record = service.cancel(db_session, "acct-1", immediately=False)

    assert record.status == "active"
    assert record.cancel_at_period_end is True
    assert ("cancel_subscription", ("sub_1", False)) in gateway.calls
    assert entitlement_service.get(db_session, "acct-1").tier == "pro"

    period_end = ensure_utc(record.current_period_end)
    assert sweep_lapsed_subscriptions(session_factory=session_factory, notifier=notifier, now=period_end - timedelta(hours=1)) == 0
    assert sweep_lapsed_subscriptions(session_factory=session_factory, notifier=notifier, now=period_end + timedelta(seconds=1)) == 1

    lapsed = subscription_store.get_record(db_session, "acct-1")
    assert lapsed.status == "canceled"
    assert lapsed.tier == "free"
    assert notifier.kinds() == ["subscription_canceled"]


def test_immediate_cancel_drops_to_free(db_session, subscribed, service, notifier) -> None:
    record = service.cancel(db_session, "acct-1", immediately=True)

    assert record.status == "canceled"
    assert record.tier == "free"
    assert notifier.kinds() == ["subscription_canceled"]
    assert entitlement_service.get(db_session, "acct-1").is_active is False


def test_cancel_without_subscription_conflicts(db_session, make_account, service) -> None:
    make_account("acct-1")
    with pytest.raises(ConflictError) as excinfo:
        service.cancel(db_session, "acct-1")
    assert excinfo.value.code == "billing.no_active_subscription"


def test_resume_undoes_scheduled_cancel(db_session, subscribed, service, gateway) -> None:
    with pytest.raises(ConflictError):
        service.resume(db_session, "acct-1")

    service.cancel(db_session, "acct-1", immediately=False)
    resumed = service.resume(db_session, "acct-1")

    assert resumed.cancel_at_period_end is False
    assert resumed.canceled_at is None
    assert "resume_subscription" in gateway.call_names()


def test_pause_and_unpause(db_session, subscribed, service, gateway) -> None:
    paused = service.pause(db_session, "acct-1")
    assert paused.status == "paused"
    assert entitlement_service.get(db_session, "acct-1").is_active is False

    assert service.pause(db_session, "acct-1").status == "paused"
    assert gateway.call_names().count("pause_subscription") == 1

    assert service.unpause(db_session, "acct-1").status == "active"


def test_trial_is_granted_once(db_session, make_account, service, session_factory, notifier) -> None:
    make_account("acct-1")
    trial = service.start_trial(db_session, "acct-1")

    assert trial.status == "trialing"
    assert trial.tier == "pro"
    assert trial.billing_source == "trial"
    assert ensure_utc(trial.trial_end) - ensure_utc(trial.trial_start) == timedelta(days=14)
    assert entitlement_service.get(db_session, "acct-1").is_active is True

    with pytest.raises(ConflictError) as excinfo:
        service.start_trial(db_session, "acct-1")
    assert excinfo.value.code == "billing.trial_used"

    swept = sweep_lapsed_subscriptions(
        session_factory=session_factory, notifier=notifier, now=ensure_utc(trial.trial_end) + timedelta(minutes=1)
    )
    assert swept == 1
    assert subscription_store.get_record(db_session, "acct-1").status == "canceled"
    with pytest.raises(ConflictError):
        service.start_trial(db_session, "acct-1")


def test_app_store_subscription_cannot_change_plan(db_session, make_account, service) -> None:
    make_account("acct-1")
    subscription_store.upsert_record(
        db_session,
        "acct-1",
        activation_changes(tier="pro", is_yearly=False, period_start=utcnow(), source=BillingSource.APPLE),
    )
    db_session.commit()

    with pytest.raises(InvalidInputError) as excinfo:
        service.change_plan(db_session, "acct-1", price_id="price_premium_monthly", is_yearly=False)
    assert excinfo.value.code == "billing.iap_managed"


def test_payment_method_default_moves_to_remaining_card(db_session, make_account, service, gateway) -> None:
    make_account("acct-1", customer_id="cus_1")

    first = service.add_payment_method(db_session, "acct-1", "pm_1")
    second = service.add_payment_method(db_session, "acct-1", "pm_2")

    assert first.is_default is True
    assert first.brand == "visa" and first.last4 == "4242"
    assert second.is_default is False

    service.remove_payment_method(db_session, "acct-1", "pm_1")

    remaining = service.list_payment_methods(db_session, "acct-1")
    assert [(method.external_payment_method_id, method.is_default) for method in remaining] == [("pm_2", True)]
    assert ("set_default_payment_method", ("cus_1", "pm_2")) in gateway.calls


def test_set_default_payment_method(db_session, make_account, service) -> None:
    make_account("acct-1", customer_id="cus_1")
    service.add_payment_method(db_session, "acct-1", "pm_1")
    service.add_payment_method(db_session, "acct-1", "pm_2")

    method = service.set_default_payment_method(db_session, "acct-1", "pm_2")

    assert method.is_default is True
    defaults = [m.external_payment_method_id for m in service.list_payment_methods(db_session, "acct-1") if m.is_default]
    assert defaults == ["pm_2"]


def test_portal_requires_processor_customer(db_session, make_account, service) -> None:
    make_account("acct-1")
    with pytest.raises(NotFoundError):
        service.create_portal_session(db_session, "acct-1", return_url="https://app.example.com")

    make_account("acct-2", customer_id="cus_2")
    url = service.create_portal_session(db_session, "acct-2", return_url="https://app.example.com")
    assert url == "https://billing.example.com/cus_2"


def test_sync_refreshes_from_processor(db_session, subscribed, service, gateway) -> None:
    gateway.subscriptions["sub_1"] = stripe_subscription(price="price_premium_yearly")

    record = service.sync_subscription(db_session, "acct-1")

    assert record.tier == "premium"
    assert record.is_yearly_billing is True
