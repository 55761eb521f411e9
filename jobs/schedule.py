"""Celery beat schedule for the billing sweeps, overridable from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from celery.schedules import crontab

from core.env import env_str

DEFAULT_SCHEDULE_FILE = Path("configs") / "schedules" / "billing.yml"

DEFAULT_ENTRIES: Dict[str, Dict[str, Any]] = {
    "billing-sweep-lapsed": {"task": "billing.sweep_lapsed_subscriptions", "cron": "*/15 * * * *"},
    "billing-reconcile-flags": {"task": "billing.reconcile_account_flags", "cron": "7 * * * *"},
    "billing-prune-ledger": {"task": "billing.prune_webhook_ledger", "cron": "30 3 * * *"},
    "billing-prune-state": {"task": "billing.prune_expired_state", "cron": "45 3 * * *"},
}


def cron_from_string(expr: str) -> crontab:
    """Convert a 5-field cron expression into a Celery ``crontab``."""
    fields = str(expr or "").split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression '{expr}'. Expected 5 fields.")
    minute, hour, day_of_month, month, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month,
        day_of_week=day_of_week,
    )


def load_schedule_entries(path: Optional[Path] = None) -> Tuple[Optional[str], Dict[str, Dict[str, Any]]]:
    """Return the timezone and entries, with the YAML file's entries replacing defaults by name."""
    entries = {name: dict(payload) for name, payload in DEFAULT_ENTRIES.items()}
    configured = env_str("BILLING_SCHEDULE_FILE")
    schedule_path = path or (Path(configured) if configured else DEFAULT_SCHEDULE_FILE)
    if not schedule_path.exists():
        return None, entries

    try:
        raw = yaml.safe_load(schedule_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Failed to parse Celery schedule file: {schedule_path}") from exc

    for name, payload in (raw.get("entries") or {}).items():
        if not isinstance(payload, dict):
            continue
        if payload.get("enabled") is False:
            entries.pop(name, None)
            continue
        task = payload.get("task") or entries.get(name, {}).get("task")
        cron = payload.get("cron")
        if not task or not cron:
            continue
        entries[name] = {
            "task": str(task),
            "cron": str(cron),
            "args": list(payload.get("args") or []),
            "kwargs": dict(payload.get("kwargs") or {}),
        }
    return raw.get("timezone"), entries


def as_beat_schedule(entries: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    schedule: Dict[str, Dict[str, Any]] = {}
    for name, payload in entries.items():
        schedule[name] = {
            "task": payload["task"],
            "schedule": cron_from_string(payload["cron"]),
            "args": payload.get("args", []),
            "kwargs": payload.get("kwargs", {}),
        }
    return schedule


__all__ = ["DEFAULT_ENTRIES", "DEFAULT_SCHEDULE_FILE", "as_beat_schedule", "cron_from_string", "load_schedule_entries"]
