"""CLI helpers to inspect and replay failed billing webhooks and pending payment retries."""

from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional

from scripts._path import add_root

add_root()

from core.env import load_dotenv_if_available  # noqa: E402

load_dotenv_if_available()

import database  # noqa: E402
from services import billing_maintenance  # noqa: E402
from services.billing_errors import BillingError  # noqa: E402
from services.payments import webhook_ledger  # noqa: E402
from services.payments.state_store import get_state_store  # noqa: E402
from services.webhook_reconciler import get_webhook_reconciler  # noqa: E402

logger = logging.getLogger(__name__)


def _format_entry(entry) -> str:
    error = (entry.error or "").splitlines()[0] if entry.error else "-"
    return (
        f"{entry.event_id} | {entry.result.upper():<9} | type={entry.event_type} "
        f"| account={entry.account_id or '-'} | at={entry.processed_at} | error={error[:120]}"
    )


def _handle_list(args) -> int:
    entries = get_webhook_reconciler().list_failed_webhooks(limit=args.limit)
    if not entries:
        print("No failed webhook events.")
        return 0
    for entry in entries:
        print(_format_entry(entry))
    return 0


def _handle_show(args) -> int:
    with database.SessionLocal() as session:
        entry = webhook_ledger.get_entry(session, args.event_id)
    if entry is None:
        print(f"Webhook event {args.event_id} not found.")
        return 1
    payload = {
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "result": entry.result,
        "account_id": entry.account_id,
        "error": entry.error,
        "processed_at": entry.processed_at.isoformat() if entry.processed_at else None,
        "payload": entry.payload,
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    return 0


def _handle_replay(args) -> int:
    try:
        outcome = get_webhook_reconciler().replay_failed_webhook(args.event_id)
    except BillingError as exc:
        print(f"Cannot replay {args.event_id}: {exc.message} ({exc.code})")
        return 1
    print(f"Replayed {args.event_id}: {outcome.result}" + (f" ({outcome.error})" if outcome.error else ""))
    return 0 if outcome.result != webhook_ledger.RESULT_FAILED else 1


def _handle_retries(args) -> int:
    store = get_state_store()
    keys = sorted(store.keys("retry:"))
    if not keys:
        print("No pending payment retries.")
        return 0
    for key in keys:
        state = store.get(key) or {}
        print(
            f"{key.split(':', 1)[1]} | attempts={state.get('attempts', 0)} "
            f"| account={state.get('account_id') or '-'} | started={state.get('started_at') or '-'}"
        )
    return 0


def _handle_sweep(args) -> int:
    canceled = billing_maintenance.sweep_lapsed_subscriptions()
    repaired = billing_maintenance.reconcile_account_flags()
    print(f"Lapsed subscriptions canceled: {canceled}; account flags repaired: {repaired}.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect and replay billing webhooks and payment retries.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List failed webhook events.")
    list_parser.add_argument("--limit", type=int, default=20, help="Maximum rows to display (default: 20).")

    show_parser = subparsers.add_parser("show", help="Show a webhook ledger entry as JSON.")
    show_parser.add_argument("event_id", help="Processor event id.")

    replay_parser = subparsers.add_parser("replay", help="Re-apply a failed webhook event from its stored payload.")
    replay_parser.add_argument("event_id", help="Processor event id.")

    subparsers.add_parser("retries", help="List customers with pending payment retry checks.")
    subparsers.add_parser("sweep", help="Run the lapse sweep and account flag reconciliation once.")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    handlers = {
        "list": _handle_list,
        "show": _handle_show,
        "replay": _handle_replay,
        "retries": _handle_retries,
        "sweep": _handle_sweep,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.error(f"Unknown command {args.command}")
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
