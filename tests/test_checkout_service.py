from __future__ import annotations

import time

import pytest
from sqlalchemy import func, select

from models.account import Account
from models.subscription import Invoice
from services import subscription_store
from services.billing_errors import InvalidInputError
from services.checkout_service import CheckoutService
from billing_fakes import stripe_subscription


@pytest.fixture()
def service(gateway, retry_scheduler, notifier, catalog) -> CheckoutService:
    return CheckoutService(
        gateway_factory=lambda: gateway,
        retry_scheduler=retry_scheduler,
        notifier=notifier,
        catalog=catalog,
    )


def _paid_session(session_id: str = "cs_paid", *, account_id: str = "acct-1", price: str = "price_pro_monthly"):
    return {
        "id": session_id,
        "payment_status": "paid",
        "metadata": {"account_id": account_id},
        "customer": "cus_1",
        "subscription": stripe_subscription("sub_1", price=price, account_id=account_id),
        "invoice": "in_checkout_1",
        "amount_total": 999,
        "currency": "usd",
        "created": int(time.time()),
    }


def _invoice_count(db) -> int:
    return db.execute(select(func.count()).select_from(Invoice)).scalar_one()


def test_create_checkout_creates_customer_once(db_session, make_account, service, gateway) -> None:
    make_account("acct-1")
    first = service.create_checkout(
        db_session,
        "acct-1",
        price_id="price_pro_monthly",
        is_yearly=False,
        success_url="https://app.example.com/ok",
        cancel_url="https://app.example.com/cancel",
    )
    second = service.create_checkout(
        db_session,
        "acct-1",
        price_id="price_premium_yearly",
        is_yearly=True,
        success_url="https://app.example.com/ok",
        cancel_url="https://app.example.com/cancel",
    )

    assert first.session_id != second.session_id
    assert first.url and first.url.startswith("https://checkout.example.com/")
    assert gateway.call_names().count("create_customer") == 1
    account = db_session.get(Account, "acct-1", populate_existing=True)
    assert account.processor_customer_id == "cus_1"


def test_create_checkout_rejects_unknown_price(db_session, make_account, service) -> None:
    make_account("acct-1")
    with pytest.raises(InvalidInputError) as excinfo:
        service.create_checkout(
            db_session, "acct-1", price_id="price_bogus", is_yearly=False, success_url="s", cancel_url="c"
        )
    assert excinfo.value.code == "billing.invalid_price"


def test_create_checkout_rejects_interval_mismatch(db_session, make_account, service, gateway) -> None:
    make_account("acct-1")
    with pytest.raises(InvalidInputError) as excinfo:
        service.create_checkout(
            db_session, "acct-1", price_id="price_pro_monthly", is_yearly=True, success_url="s", cancel_url="c"
        )
    assert excinfo.value.code == "billing.interval_mismatch"
    assert gateway.calls == []


def test_unpaid_session_changes_nothing(db_session, make_account, service, gateway, notifier) -> None:
    make_account("acct-1")
    session = _paid_session()
    session["payment_status"] = "unpaid"
    gateway.checkout_sessions["cs_paid"] = session

    result = service.verify_checkout(db_session, "acct-1", "cs_paid")

    assert result.success is False
    assert result.payment_status == "unpaid"
    assert subscription_store.get_record(db_session, "acct-1") is None
    assert _invoice_count(db_session) == 0
    assert notifier.calls == []


def test_paid_session_activates_plan_and_records_invoice(db_session, make_account, service, gateway, notifier) -> None:
    account = make_account("acct-1")
    gateway.checkout_sessions["cs_paid"] = _paid_session()

    result = service.verify_checkout(db_session, "acct-1", "cs_paid")

    assert result.success is True
    record = result.record
    assert record.status == "active"
    assert record.tier == "pro"
    assert record.processor_subscription_id == "sub_1"
    assert record.billing_source == "card"
    assert _invoice_count(db_session) == 1
    assert notifier.kinds() == ["subscription_activated"]

    db_session.refresh(account)
    assert account.subscription_tier == "pro"
    assert account.has_active_subscription is True
    assert account.processor_customer_id == "cus_1"


def test_repeat_verification_is_idempotent(db_session, make_account, service, gateway, notifier) -> None:
    make_account("acct-1")
    gateway.checkout_sessions["cs_paid"] = _paid_session()

    service.verify_checkout(db_session, "acct-1", "cs_paid")
    again = service.verify_checkout(db_session, "acct-1", "cs_paid")

    assert again.success is True
    assert again.record.tier == "pro"
    assert _invoice_count(db_session) == 1
    assert len(notifier.calls) == 1


def test_session_for_another_account_is_rejected(db_session, make_account, service, gateway) -> None:
    make_account("acct-1")
    gateway.checkout_sessions["cs_paid"] = _paid_session(account_id="acct-2")

    with pytest.raises(InvalidInputError) as excinfo:
        service.verify_checkout(db_session, "acct-1", "cs_paid")
    assert excinfo.value.code == "billing.session_mismatch"
    assert subscription_store.get_record(db_session, "acct-1") is None


def test_verification_clears_pending_retry(db_session, make_account, service, gateway, retry_scheduler, dispatcher) -> None:
    make_account("acct-1")
    retry_scheduler.on_payment_failed("cus_1", account_id="acct-1")
    assert retry_scheduler.pending("cus_1") is not None
    gateway.checkout_sessions["cs_paid"] = _paid_session()

    service.verify_checkout(db_session, "acct-1", "cs_paid")

    assert retry_scheduler.pending("cus_1") is None
    assert len(dispatcher.calls) == 1
