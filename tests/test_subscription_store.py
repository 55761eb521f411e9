from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from models.account import Account
from models.subscription import Invoice, SubscriptionRecord
from services import subscription_store
from services.billing_errors import InvalidInputError
from services.subscription_state import activation_changes, cancellation_changes

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _activate(db, account_id: str, tier: str = "pro", *, now: datetime = NOW, **kwargs) -> SubscriptionRecord:
    changes = activation_changes(
        tier=tier,
        is_yearly=False,
        period_start=kwargs.pop("period_start", now - timedelta(days=1)),
        source=BillingSource.CARD,
        **kwargs,
    )
    record = subscription_store.upsert_record(db, account_id, changes, now=now)
    db.commit()
    return record


def test_upsert_creates_record_and_syncs_account_flags(db_session, make_account) -> None:
    make_account("acct-1")
    record = _activate(db_session, "acct-1", subscription_id="sub_1", customer_id="cus_1")

    assert record.status == "active"
    assert record.tier == "pro"
    assert record.processor_subscription_id == "sub_1"
    account = db_session.get(Account, "acct-1")
    db_session.refresh(account)
    assert account.subscription_tier == "pro"
    assert account.has_active_subscription is True


def test_cancellation_clears_account_flags(db_session, make_account) -> None:
    make_account("acct-1")
    _activate(db_session, "acct-1")
    subscription_store.upsert_record(db_session, "acct-1", cancellation_changes(NOW), now=NOW)
    db_session.commit()

    account = db_session.get(Account, "acct-1")
    db_session.refresh(account)
    assert account.subscription_tier == "free"
    assert account.has_active_subscription is False


def test_upsert_without_mirrored_account_still_writes_record(db_session) -> None:
    record = _activate(db_session, "acct-orphan")
    assert record.tier == "pro"


def test_ensure_record_creates_free_baseline_once(db_session) -> None:
    first = subscription_store.ensure_record(db_session, "acct-1", now=NOW)
    second = subscription_store.ensure_record(db_session, "acct-1", now=NOW)
    db_session.commit()
    assert first.id == second.id
    assert first.tier == "free"
    assert first.status == "canceled"
    assert first.features["max_gig_applications"] == 5


def test_update_record_honours_conditions(db_session) -> None:
    _activate(db_session, "acct-1")
    skipped = subscription_store.update_record(
        db_session,
        "acct-1",
        {"status": SubscriptionStatus.PAST_DUE.value},
        conditions=[SubscriptionRecord.status == SubscriptionStatus.CANCELED.value],
    )
    assert skipped is None
    updated = subscription_store.update_record(db_session, "acct-1", {"status": "past_due"})
    assert updated is not None and updated.status == "past_due"
    assert subscription_store.update_record(db_session, "acct-missing", {"status": "past_due"}) is None


def test_update_record_refuses_activating_free_record(db_session) -> None:
    subscription_store.ensure_record(db_session, "acct-1", now=NOW)
    assert subscription_store.update_record(db_session, "acct-1", {"status": "active"}) is None


def test_usage_counter_respects_limit(db_session) -> None:
    counter = subscription_store.resolve_counter("gigApplications")
    for expected in range(1, 6):
        assert subscription_store.increment_usage(db_session, "acct-1", counter, amount=1, limit=5, now=NOW) == expected
    assert subscription_store.increment_usage(db_session, "acct-1", counter, amount=1, limit=5, now=NOW) is None
    record = subscription_store.get_record(db_session, "acct-1")
    assert subscription_store.read_usage(record, counter, now=NOW) == 5


def test_usage_counter_unlimited(db_session) -> None:
    counter = subscription_store.resolve_counter("media_uploads")
    for _ in range(50):
        assert subscription_store.increment_usage(db_session, "acct-1", counter, amount=1, limit=-1, now=NOW) is not None


def test_usage_resets_in_new_month(db_session) -> None:
    counter = subscription_store.resolve_counter("boosts")
    subscription_store.increment_usage(db_session, "acct-1", counter, amount=3, limit=5, now=NOW)
    next_month = NOW + timedelta(days=31)
    assert subscription_store.increment_usage(db_session, "acct-1", counter, amount=1, limit=5, now=next_month) == 1


def test_tier_change_resets_usage(db_session) -> None:
    _activate(db_session, "acct-1", "pro")
    counter = subscription_store.resolve_counter("gig_applications")
    subscription_store.increment_usage(db_session, "acct-1", counter, amount=4, limit=20, now=NOW)
    db_session.commit()

    _activate(db_session, "acct-1", "premium")
    record = subscription_store.get_record(db_session, "acct-1")
    assert record.gig_applications_this_month == 0


def test_same_tier_renewal_in_same_period_keeps_usage(db_session) -> None:
    start = NOW - timedelta(days=1)
    _activate(db_session, "acct-1", "pro", period_start=start)
    counter = subscription_store.resolve_counter("gig_applications")
    subscription_store.increment_usage(db_session, "acct-1", counter, amount=4, limit=20, now=NOW)
    db_session.commit()

    _activate(db_session, "acct-1", "pro", period_start=start)
    assert subscription_store.get_record(db_session, "acct-1").gig_applications_this_month == 4


def test_unknown_counter_rejected() -> None:
    with pytest.raises(InvalidInputError):
        subscription_store.resolve_counter("likes")


def test_record_invoice_is_idempotent(db_session) -> None:
    kwargs = dict(account_id="acct-1", external_invoice_id="in_1", amount=999, amount_paid=999)
    assert subscription_store.record_invoice(db_session, **kwargs) is True
    assert subscription_store.record_invoice(db_session, **kwargs) is False
    db_session.commit()
    rows = db_session.execute(select(Invoice).where(Invoice.external_invoice_id == "in_1")).scalars().all()
    assert len(rows) == 1


def test_record_invoice_rejects_negative_amount(db_session) -> None:
    with pytest.raises(InvalidInputError):
        subscription_store.record_invoice(db_session, account_id="acct-1", external_invoice_id="in_x", amount=-1, amount_paid=0)


def test_list_invoices_paginates(db_session) -> None:
    for index in range(3):
        subscription_store.record_invoice(
            db_session,
            account_id="acct-1",
            external_invoice_id=f"in_{index}",
            amount=100,
            amount_paid=100,
        )
    db_session.commit()
    first, has_more = subscription_store.list_invoices(db_session, "acct-1", page=1, limit=2)
    second, has_more_after = subscription_store.list_invoices(db_session, "acct-1", page=2, limit=2)
    assert len(first) == 2 and has_more is True
    assert len(second) == 1 and has_more_after is False


def test_single_default_payment_method(db_session) -> None:
    for external_id in ("pm_1", "pm_2"):
        subscription_store.save_payment_method(
            db_session,
            account_id="acct-1",
            external_id=external_id,
            method_type="card",
            brand="visa",
            last4="4242",
            exp_month=1,
            exp_year=2030,
            make_default=True,
        )
    db_session.commit()
    methods = subscription_store.list_payment_methods(db_session, "acct-1")
    assert [method.external_payment_method_id for method in methods if method.is_default] == ["pm_2"]


def test_find_by_customer_falls_back_to_account(db_session, make_account) -> None:
    make_account("acct-1", customer_id="cus_9")
    subscription_store.ensure_record(db_session, "acct-1", now=NOW)
    db_session.commit()
    record = subscription_store.find_by_customer(db_session, "cus_9")
    assert record is not None and record.account_id == "acct-1"
    assert subscription_store.find_by_customer(db_session, "cus_missing") is None


def test_find_lapsed_records(db_session) -> None:
    _activate(db_session, "acct-soft", period_start=NOW - timedelta(days=31))
    subscription_store.update_record(db_session, "acct-soft", {"cancel_at_period_end": True})
    _activate(db_session, "acct-live", period_start=NOW - timedelta(days=1))
    db_session.commit()

    lapsed = subscription_store.find_lapsed_records(db_session, now=NOW)
    assert [record.account_id for record in lapsed] == ["acct-soft"]


def test_find_flag_drift(db_session, make_account) -> None:
    make_account("acct-1")
    _activate(db_session, "acct-1")
    account = db_session.get(Account, "acct-1")
    db_session.refresh(account)
    account.subscription_tier = PlanTier.FREE.value
    account.has_active_subscription = False
    db_session.commit()

    drifted = subscription_store.find_flag_drift(db_session)
    assert [record.account_id for record, _ in drifted] == ["acct-1"]


def _locked() -> OperationalError:
    return OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))


def test_run_transaction_retries_transient_errors(session_factory, make_account) -> None:
    make_account("acct-1")
    failures = [_locked()]

    def operation(db):
        if failures:
            raise failures.pop()
        changes = activation_changes(tier="pro", is_yearly=False, period_start=NOW, source=BillingSource.CARD)
        return subscription_store.upsert_record(db, "acct-1", changes, now=NOW).status

    status = subscription_store.run_transaction(operation, context="test", session_factory=session_factory)

    assert status == "active"


def test_run_transaction_raises_after_last_attempt(session_factory) -> None:
    calls = []

    def operation(db):
        calls.append(db)
        raise _locked()

    with pytest.raises(OperationalError):
        subscription_store.run_transaction(operation, context="test", attempts=2, session_factory=session_factory)

    assert len(calls) == 2


def test_run_transaction_requires_an_attempt(session_factory) -> None:
    with pytest.raises(ValueError):
        subscription_store.run_transaction(lambda db: None, context="test", attempts=0, session_factory=session_factory)
