"""Receipt verification clients for the Apple App Store and Google Play."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from core.billing_settings import (
    DEFAULT_APPLE_SANDBOX_VERIFY_URL,
    DEFAULT_APPLE_VERIFY_URL,
    DEFAULT_GOOGLE_PLAY_API_BASE,
    BillingSettings,
    get_billing_settings,
)
from core.clock import from_unix_millis
from services.billing_errors import ExternalServiceError, ReceiptValidationError

logger = logging.getLogger(__name__)

APPLE_STATUS_OK = 0
APPLE_STATUS_SANDBOX_RECEIPT = 21007
GOOGLE_PAYMENT_STATE_FREE_TRIAL = 2


@dataclass(frozen=True)
class StorePurchase:
    """A verified store subscription purchase."""

    platform: str
    product_id: str
    transaction_id: str
    purchased_at: Optional[datetime]
    expires_at: Optional[datetime]
    is_trial: bool = False
    auto_renewing: Optional[bool] = None


def _post_json(client: httpx.Client, url: str, payload: Mapping[str, Any], *, store: str) -> Dict[str, Any]:
    try:
        response = client.post(url, json=dict(payload))
    except httpx.TimeoutException as exc:
        raise ExternalServiceError(f"{store} verification timed out.", code="billing.store_timeout") from exc
    except httpx.HTTPError as exc:
        raise ExternalServiceError(f"{store} verification is unreachable.", code="billing.store_unreachable") from exc
    if response.status_code >= 400:
        logger.warning("%s verification returned HTTP %s.", store, response.status_code)
        raise ExternalServiceError(
            f"{store} verification failed.",
            code="billing.store_error",
            upstream_status=response.status_code,
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ExternalServiceError(f"{store} returned an invalid response.", code="billing.store_error") from exc
    if not isinstance(body, dict):
        raise ExternalServiceError(f"{store} returned an invalid response.", code="billing.store_error")
    return body


@dataclass(slots=True)
class AppleReceiptClient:
    shared_secret: str
    verify_url: str = DEFAULT_APPLE_VERIFY_URL
    sandbox_verify_url: str = DEFAULT_APPLE_SANDBOX_VERIFY_URL
    timeout: float = 10.0
    transport: Optional[httpx.BaseTransport] = None

    def verify_receipt(self, receipt: str) -> Dict[str, Any]:
        """Return the verifyReceipt document; sandbox receipts are retried against the sandbox."""
        payload = {"receipt-data": receipt, "password": self.shared_secret, "exclude-old-transactions": True}
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            body = _post_json(client, self.verify_url, payload, store="App Store")
            if body.get("status") == APPLE_STATUS_SANDBOX_RECEIPT:
                logger.info("Sandbox receipt submitted to production; retrying against sandbox.")
                body = _post_json(client, self.sandbox_verify_url, payload, store="App Store")
        status = body.get("status")
        if status != APPLE_STATUS_OK:
            raise ReceiptValidationError(
                f"App Store rejected the receipt (status {status}).",
                code="billing.receipt_rejected",
                payload={"status": status},
            )
        return body

    def latest_purchase(self, receipt: str, *, product_id: Optional[str] = None) -> StorePurchase:
        body = self.verify_receipt(receipt)
        entries: List[Mapping[str, Any]] = [
            item
            for item in (body.get("latest_receipt_info") or (body.get("receipt") or {}).get("in_app") or [])
            if isinstance(item, Mapping) and (product_id is None or item.get("product_id") == product_id)
        ]
        if not entries:
            raise ReceiptValidationError("Receipt contains no subscription purchase.", code="billing.receipt_empty")
        latest = max(entries, key=lambda item: int(item.get("expires_date_ms") or 0))
        transaction_id = latest.get("original_transaction_id") or latest.get("transaction_id")
        if not transaction_id or not latest.get("product_id"):
            raise ReceiptValidationError("Receipt purchase is missing its identifiers.", code="billing.receipt_invalid")
        return StorePurchase(
            platform="apple",
            product_id=str(latest["product_id"]),
            transaction_id=str(transaction_id),
            purchased_at=from_unix_millis(latest.get("purchase_date_ms")),
            expires_at=from_unix_millis(latest.get("expires_date_ms")),
            is_trial=str(latest.get("is_trial_period", "false")).lower() == "true",
        )


def _base_order_id(order_id: str) -> str:
    # Renewals are reported as "<order>..<n>".
    return order_id.split("..", 1)[0]


@dataclass(slots=True)
class GooglePlayClient:
    package_name: str
    access_token: str
    api_base: str = DEFAULT_GOOGLE_PLAY_API_BASE
    timeout: float = 10.0
    transport: Optional[httpx.BaseTransport] = None

    def get_subscription(self, product_id: str, purchase_token: str) -> Dict[str, Any]:
        url = (
            f"{self.api_base.rstrip('/')}/androidpublisher/v3/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}/tokens/{quote(purchase_token, safe='')}"
        )
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExternalServiceError("Google Play verification timed out.", code="billing.store_timeout") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Google Play is unreachable.", code="billing.store_unreachable") from exc

        if response.status_code in (400, 404, 410):
            raise ReceiptValidationError(
                "Google Play does not recognise this purchase.",
                code="billing.receipt_rejected",
                payload={"status": response.status_code},
            )
        if response.status_code >= 400:
            logger.warning("Google Play verification returned HTTP %s.", response.status_code)
            raise ExternalServiceError(
                "Google Play verification failed.",
                code="billing.store_error",
                upstream_status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError("Google Play returned an invalid response.", code="billing.store_error") from exc
        if not isinstance(body, dict):
            raise ExternalServiceError("Google Play returned an invalid response.", code="billing.store_error")
        return body

    def purchase(self, product_id: str, purchase_token: str) -> StorePurchase:
        body = self.get_subscription(product_id, purchase_token)
        order_id = body.get("orderId")
        if not isinstance(order_id, str) or not order_id:
            raise ReceiptValidationError("Purchase has no order id.", code="billing.receipt_invalid")
        auto_renewing = body.get("autoRenewing")
        return StorePurchase(
            platform="google",
            product_id=product_id,
            transaction_id=_base_order_id(order_id),
            purchased_at=from_unix_millis(body.get("startTimeMillis")),
            expires_at=from_unix_millis(body.get("expiryTimeMillis")),
            is_trial=body.get("paymentState") == GOOGLE_PAYMENT_STATE_FREE_TRIAL,
            auto_renewing=bool(auto_renewing) if auto_renewing is not None else None,
        )


def get_apple_client(settings: Optional[BillingSettings] = None) -> AppleReceiptClient:
    settings = settings or get_billing_settings()
    if not settings.apple_shared_secret:
        raise ExternalServiceError("App Store verification is not configured.", code="billing.store_unconfigured")
    return AppleReceiptClient(
        shared_secret=settings.apple_shared_secret,
        verify_url=settings.apple_verify_url,
        sandbox_verify_url=settings.apple_sandbox_verify_url,
        timeout=settings.http_timeout_seconds,
    )


def get_google_client(settings: Optional[BillingSettings] = None) -> GooglePlayClient:
    settings = settings or get_billing_settings()
    if not settings.google_play_package_name or not settings.google_play_access_token:
        raise ExternalServiceError("Google Play verification is not configured.", code="billing.store_unconfigured")
    return GooglePlayClient(
        package_name=settings.google_play_package_name,
        access_token=settings.google_play_access_token,
        api_base=settings.google_play_api_base,
        timeout=settings.http_timeout_seconds,
    )


__all__ = [
    "AppleReceiptClient",
    "GooglePlayClient",
    "StorePurchase",
    "get_apple_client",
    "get_google_client",
]
