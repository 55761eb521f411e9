"""Fire-and-forget account notifications for billing lifecycle events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from core.billing_settings import get_billing_settings

logger = logging.getLogger(__name__)

KIND_ACTIVATED = "subscription_activated"
KIND_RENEWED = "subscription_renewed"
KIND_PAYMENT_FAILED = "payment_failed"
KIND_CANCELED = "subscription_canceled"
KIND_TRIAL_ENDING = "trial_ending"


@dataclass
class NotificationResult:
    status: str
    error: Optional[str] = None


Notifier = Callable[..., NotificationResult]


def notify_account(
    account_id: str,
    kind: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> NotificationResult:
    """Post a notification to the notification service; never raises."""
    settings = get_billing_settings()
    url = settings.notification_service_url
    if not url:
        logger.debug("Notification service not configured; dropping %s for account=%s.", kind, account_id)
        return NotificationResult(status="skipped")

    payload = {"accountId": account_id, "type": kind, "title": title, "body": body, "data": data or {}}
    try:
        with httpx.Client(timeout=settings.http_timeout_seconds, transport=transport) as client:
            response = client.post(url, json=payload)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.warning("Notification HTTP error for account=%s kind=%s: %s", account_id, kind, exc.response.status_code)
        return NotificationResult(status="failed", error=f"http_{exc.response.status_code}")
    except httpx.HTTPError as exc:
        logger.warning("Notification request error for account=%s kind=%s: %s", account_id, kind, exc)
        return NotificationResult(status="failed", error=str(exc))
    return NotificationResult(status="delivered")


__all__ = [
    "KIND_ACTIVATED",
    "KIND_CANCELED",
    "KIND_PAYMENT_FAILED",
    "KIND_RENEWED",
    "KIND_TRIAL_ENDING",
    "NotificationResult",
    "Notifier",
    "notify_account",
]
