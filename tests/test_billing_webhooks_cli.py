from __future__ import annotations

import json

from scripts import billing_webhooks
from services import webhook_reconciler as webhook_reconciler_module
from services.payments import webhook_ledger


def _record_failed(session_factory, event_id: str = "evt_failed") -> None:
    with session_factory() as db:
        webhook_ledger.record_failure(
            db,
            event_id=event_id,
            event_type="invoice.paid",
            error="RuntimeError: boom\ntraceback",
            payload={"id": event_id, "type": "invoice.paid"},
            account_id="acct-1",
        )
        db.commit()


def test_list_reports_empty_ledger(session_factory, capsys) -> None:
    assert billing_webhooks.main(["list"]) == 0
    assert "No failed webhook events." in capsys.readouterr().out


def test_list_shows_failed_entries(session_factory, capsys) -> None:
    _record_failed(session_factory)

    assert billing_webhooks.main(["list", "--limit", "5"]) == 0

    out = capsys.readouterr().out
    assert "evt_failed" in out
    assert "FAILED" in out
    assert "error=RuntimeError: boom" in out
    assert "traceback" not in out


def test_show_prints_entry_json(session_factory, capsys) -> None:
    _record_failed(session_factory)

    assert billing_webhooks.main(["show", "evt_failed"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["event_type"] == "invoice.paid"
    assert payload["result"] == webhook_ledger.RESULT_FAILED
    assert payload["payload"]["id"] == "evt_failed"


def test_show_missing_entry_returns_error(session_factory, capsys) -> None:
    assert billing_webhooks.main(["show", "evt_missing"]) == 1
    assert "not found" in capsys.readouterr().out


def test_replay_unknown_event_is_reported(session_factory, capsys) -> None:
    assert billing_webhooks.main(["replay", "evt_missing"]) == 1
    assert "billing.webhook_not_found" in capsys.readouterr().out


def test_replay_delegates_to_reconciler(session_factory, monkeypatch, capsys) -> None:
    calls = []

    class _Reconciler:
        def replay_failed_webhook(self, event_id):
            calls.append(event_id)
            return webhook_reconciler_module.WebhookOutcome(
                event_id=event_id, event_type="invoice.paid", result=webhook_ledger.RESULT_PROCESSED
            )

    monkeypatch.setattr(billing_webhooks, "get_webhook_reconciler", lambda: _Reconciler())

    assert billing_webhooks.main(["replay", "evt_failed"]) == 0
    assert calls == ["evt_failed"]
    assert "Replayed evt_failed: processed" in capsys.readouterr().out


def test_retries_lists_pending_customers(state_store, monkeypatch, capsys) -> None:
    state_store.set("retry:cus_1", {"attempts": 2, "account_id": "acct-1"}, ttl_seconds=3600)
    monkeypatch.setattr(billing_webhooks, "get_state_store", lambda: state_store)

    assert billing_webhooks.main(["retries"]) == 0

    out = capsys.readouterr().out
    assert "cus_1 | attempts=2 | account=acct-1" in out
