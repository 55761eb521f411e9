from __future__ import annotations

from billing_fakes import stripe_subscription
from core.clock import utcnow
from core.plan_constants import BillingSource
from services import subscription_store
from services.billing_errors import ExternalServiceError
from jobs import tasks
from services.retry_scheduler import (
    OUTCOME_CANCELED,
    OUTCOME_IDLE,
    OUTCOME_RECOVERED,
    OUTCOME_RESCHEDULED,
    celery_dispatch,
    retry_key,
)
from services.subscription_state import activation_changes, past_due_changes


def _past_due_account(db_session, make_account, gateway, *, processor_status: str = "past_due") -> None:
    make_account("acct-1", customer_id="cus_1")
    subscription_store.upsert_record(
        db_session,
        "acct-1",
        activation_changes(
            tier="pro",
            is_yearly=False,
            period_start=utcnow(),
            source=BillingSource.CARD,
            subscription_id="sub_1",
            customer_id="cus_1",
        ),
    )
    subscription_store.update_record(db_session, "acct-1", past_due_changes())
    db_session.commit()
    gateway.subscriptions["sub_1"] = stripe_subscription(status=processor_status)


def test_retry_key_is_scoped_by_customer() -> None:
    assert retry_key("cus_1") == "retry:cus_1"


def test_on_payment_failed_schedules_once(retry_scheduler, dispatcher) -> None:
    assert retry_scheduler.on_payment_failed("cus_1", account_id="acct-1", invoice_id="in_1") is True
    assert retry_scheduler.on_payment_failed("cus_1", account_id="acct-1", invoice_id="in_2") is False

    assert dispatcher.calls == [("cus_1", 3600)]
    state = retry_scheduler.pending("cus_1")
    assert state["attempts"] == 0
    assert state["invoice_id"] == "in_1"


def test_unpaid_subscription_is_canceled_after_three_checks(
    db_session, make_account, gateway, retry_scheduler, dispatcher, notifier
) -> None:
    _past_due_account(db_session, make_account, gateway)
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")

    assert retry_scheduler.run_check("cus_1") == OUTCOME_RESCHEDULED
    assert retry_scheduler.pending("cus_1")["attempts"] == 1
    assert retry_scheduler.run_check("cus_1") == OUTCOME_RESCHEDULED
    assert retry_scheduler.run_check("cus_1") == OUTCOME_CANCELED

    assert dispatcher.calls == [("cus_1", 3600), ("cus_1", 6 * 3600), ("cus_1", 24 * 3600)]
    assert retry_scheduler.pending("cus_1") is None
    assert ("cancel_subscription", ("sub_1", True)) in gateway.calls
    record = subscription_store.get_record(db_session, "acct-1")
    assert record.status == "canceled"
    assert record.tier == "free"
    assert notifier.kinds() == ["subscription_canceled"]

    assert retry_scheduler.run_check("cus_1") == OUTCOME_IDLE
    assert len(dispatcher.calls) == 3


def test_recovered_payment_clears_retry_state(db_session, make_account, gateway, retry_scheduler, dispatcher) -> None:
    _past_due_account(db_session, make_account, gateway, processor_status="active")
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")

    assert retry_scheduler.run_check("cus_1") == OUTCOME_RECOVERED

    assert retry_scheduler.pending("cus_1") is None
    assert dispatcher.calls == [("cus_1", 3600)]
    assert subscription_store.get_record(db_session, "acct-1").status == "active"


def test_processor_cancel_failure_still_cancels_locally(
    db_session, make_account, gateway, retry_scheduler, dispatcher
) -> None:
    _past_due_account(db_session, make_account, gateway)
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")
    retry_scheduler.run_check("cus_1")
    retry_scheduler.run_check("cus_1")

    gateway.fail_with = ExternalServiceError("processor down")
    assert retry_scheduler.run_check("cus_1") == OUTCOME_CANCELED

    assert subscription_store.get_record(db_session, "acct-1").status == "canceled"
    assert retry_scheduler.pending("cus_1") is None


def test_check_without_pending_state_is_idle(retry_scheduler, dispatcher) -> None:
    assert retry_scheduler.run_check("cus_unknown") == OUTCOME_IDLE
    assert dispatcher.calls == []


def test_reset_ignores_missing_customer(retry_scheduler) -> None:
    retry_scheduler.reset(None)
    retry_scheduler.on_payment_failed("cus_1")
    retry_scheduler.reset("cus_1")
    assert retry_scheduler.pending("cus_1") is None


def _run_queued(retry_scheduler, check) -> str:
    return retry_scheduler.run_check(check["customer_id"], sequence=check["sequence"], attempt=check["attempt"])


def test_check_from_reset_sequence_does_not_advance_new_sequence(
    db_session, make_account, gateway, retry_scheduler, dispatcher
) -> None:
    _past_due_account(db_session, make_account, gateway)
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")
    leftover = dispatcher.checks[0]
    retry_scheduler.reset("cus_1")
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")
    first = dispatcher.checks[1]
    assert first["sequence"] != leftover["sequence"]

    assert _run_queued(retry_scheduler, leftover) == OUTCOME_IDLE
    assert retry_scheduler.pending("cus_1")["attempts"] == 0

    assert _run_queued(retry_scheduler, first) == OUTCOME_RESCHEDULED
    assert _run_queued(retry_scheduler, dispatcher.checks[2]) == OUTCOME_RESCHEDULED
    assert subscription_store.get_record(db_session, "acct-1").status == "past_due"
    assert _run_queued(retry_scheduler, dispatcher.checks[3]) == OUTCOME_CANCELED

    assert dispatcher.calls == [("cus_1", 3600), ("cus_1", 3600), ("cus_1", 6 * 3600), ("cus_1", 24 * 3600)]
    assert [check["attempt"] for check in dispatcher.checks] == [0, 0, 1, 2]


def test_redelivered_check_is_ignored(db_session, make_account, gateway, retry_scheduler, dispatcher) -> None:
    _past_due_account(db_session, make_account, gateway)
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")
    check = dispatcher.checks[0]

    assert _run_queued(retry_scheduler, check) == OUTCOME_RESCHEDULED
    assert _run_queued(retry_scheduler, check) == OUTCOME_IDLE

    assert retry_scheduler.pending("cus_1")["attempts"] == 1
    assert len(dispatcher.calls) == 2


def test_celery_dispatch_carries_sequence_and_attempt(monkeypatch) -> None:
    sent = []
    monkeypatch.setattr(tasks.check_payment_retry, "apply_async", lambda **kwargs: sent.append(kwargs))

    celery_dispatch("cus_1", 3600, sequence="abc", attempt=2)

    assert sent == [{"args": ["cus_1"], "kwargs": {"sequence": "abc", "attempt": 2}, "countdown": 3600}]
