"""Stripe REST client used as the payment processor gateway."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx

from core.billing_settings import BillingSettings, DEFAULT_STRIPE_API_BASE, get_billing_settings
from services.billing_errors import ExternalServiceError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_form(data: Mapping[str, Any], prefix: Optional[str] = None) -> List[Tuple[str, str]]:
    """Flatten nested mappings/lists into Stripe's bracketed form encoding."""
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _error_message(payload: Mapping[str, Any], default: str) -> str:
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return default


@dataclass(slots=True)
class StripeGateway:
    """HTTP client wrapper for the Stripe API."""

    secret_key: str
    base_url: str = DEFAULT_STRIPE_API_BASE
    timeout: float = 10.0
    transport: Optional[httpx.BaseTransport] = None

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        content = None
        if data:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            content = urlencode(encode_form(data))
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    url,
                    headers=headers,
                    content=content,
                    params=encode_form(params) if params else None,
                )
        except httpx.TimeoutException as exc:
            logger.warning("Stripe %s %s timed out: %s", method, path, exc)
            raise ExternalServiceError("Payment processor timed out.", code="billing.processor_timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Stripe %s %s failed: %s", method, path, exc)
            raise ExternalServiceError("Payment processor is unreachable.", code="billing.processor_unreachable") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"body": response.text}
            if not isinstance(payload, dict):
                payload = {"body": payload}
            self._raise_for_status(response.status_code, method, path, payload)

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError("Payment processor returned an invalid response.") from exc
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _raise_for_status(status_code: int, method: str, path: str, payload: Dict[str, Any]) -> None:
        logger.warning("Stripe API error %s on %s %s: %s", status_code, method, path, payload)
        message = _error_message(payload, "Payment processor request failed.")
        if status_code == 404:
            raise NotFoundError(message, code="billing.processor_not_found", payload=payload)
        if status_code == 429:
            raise ExternalServiceError(
                "Payment processor rate limit reached.",
                code="billing.processor_rate_limited",
                payload=payload,
                upstream_status=status_code,
            )
        if status_code in (400, 402):
            raise InvalidInputError(message, code="billing.processor_rejected", payload=payload)
        raise ExternalServiceError(message, code="billing.processor_error", payload=payload, upstream_status=status_code)

    # Customers -----------------------------------------------------------

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Mapping[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        logger.info("Creating Stripe customer for account=%s", metadata.get("account_id"))
        return self._request(
            "POST",
            "/v1/customers",
            data={"email": email, "name": name, "metadata": dict(metadata)},
            idempotency_key=idempotency_key,
        )

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/customers/{customer_id}")

    def update_customer(self, customer_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/v1/customers/{customer_id}", data=fields)

    def delete_customer(self, customer_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/v1/customers/{customer_id}")

    # Checkout ------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        logger.info("Creating Stripe checkout session customer=%s price=%s", customer_id, price_id)
        return self._request(
            "POST",
            "/v1/checkout/sessions",
            data={
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": metadata.get("account_id"),
                "metadata": dict(metadata),
                "subscription_data": {"metadata": dict(metadata)},
            },
        )

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._request(
            "GET",
            f"/v1/checkout/sessions/{session_id}",
            params={"expand": ["line_items", "subscription"]},
        )

    # Subscriptions -------------------------------------------------------

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/v1/subscriptions",
            data={
                "customer": customer_id,
                "items": [{"price": price_id}],
                "metadata": dict(metadata),
                "trial_period_days": trial_days,
            },
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/subscriptions/{subscription_id}")

    def update_subscription_price(self, subscription_id: str, price_id: str) -> Dict[str, Any]:
        current = self.retrieve_subscription(subscription_id)
        items = ((current.get("items") or {}).get("data")) or []
        if not items:
            raise InvalidInputError("Processor subscription has no items to update.")
        return self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={
                "items": [{"id": items[0].get("id"), "price": price_id}],
                "proration_behavior": "create_prorations",
                "cancel_at_period_end": False,
            },
        )

    def cancel_subscription(self, subscription_id: str, *, immediately: bool) -> Dict[str, Any]:
        logger.info("Canceling Stripe subscription=%s immediately=%s", subscription_id, immediately)
        if immediately:
            return self._request("DELETE", f"/v1/subscriptions/{subscription_id}")
        return self._request("POST", f"/v1/subscriptions/{subscription_id}", data={"cancel_at_period_end": True})

    def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v1/subscriptions/{subscription_id}", data={"cancel_at_period_end": False})

    def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={"pause_collection": {"behavior": "void"}},
        )

    def unpause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        # An empty value clears pause_collection.
        return self._request("POST", f"/v1/subscriptions/{subscription_id}", data={"pause_collection": ""})

    # Payment intents -----------------------------------------------------

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        if amount <= 0:
            raise InvalidInputError("Payment amount must be positive.")
        return self._request(
            "POST",
            "/v1/payment_intents",
            data={
                "amount": amount,
                "currency": currency,
                "customer": customer_id,
                "metadata": dict(metadata or {}),
                "automatic_payment_methods": {"enabled": True},
            },
        )

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/payment_intents/{payment_intent_id}")

    def confirm_payment_intent(self, payment_intent_id: str, *, payment_method_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/payment_intents/{payment_intent_id}/confirm",
            data={"payment_method": payment_method_id},
        )

    def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v1/payment_intents/{payment_intent_id}/cancel")

    # Payment methods -----------------------------------------------------

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/payment_methods/{payment_method_id}/attach",
            data={"customer": customer_id},
        )

    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v1/payment_methods/{payment_method_id}/detach")

    def list_payment_methods(self, customer_id: str, *, method_type: str = "card") -> List[Dict[str, Any]]:
        payload = self._request(
            "GET",
            f"/v1/customers/{customer_id}/payment_methods",
            params={"type": method_type},
        )
        return list(payload.get("data") or [])

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> Dict[str, Any]:
        return self.update_customer(
            customer_id,
            {"invoice_settings": {"default_payment_method": payment_method_id}},
        )

    # Invoices ------------------------------------------------------------

    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/invoices/{invoice_id}")

    def list_invoices(self, customer_id: str, *, limit: int = 10, starting_after: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "GET",
            "/v1/invoices",
            params={"customer": customer_id, "limit": limit, "starting_after": starting_after},
        )

    # Billing portal ------------------------------------------------------

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/v1/billing_portal/sessions",
            data={"customer": customer_id, "return_url": return_url},
        )


def get_payment_gateway(settings: Optional[BillingSettings] = None) -> StripeGateway:
    settings = settings or get_billing_settings()
    if not settings.stripe_secret_key:
        raise ExternalServiceError(
            "Payment processor is not configured. Set STRIPE_SECRET_KEY.",
            code="billing.processor_unconfigured",
        )
    return StripeGateway(
        secret_key=settings.stripe_secret_key,
        base_url=settings.stripe_api_base,
        timeout=settings.http_timeout_seconds,
    )


def _parse_signature_header(header: str) -> Tuple[Optional[int], Sequence[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    *,
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Validate a ``Stripe-Signature`` header (``t=...,v1=...``) against the raw body."""
    if not payload or not signature_header or not secret:
        return False

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        logger.debug("Webhook signature header is malformed.")
        return False

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - timestamp) > tolerance_seconds:
        logger.warning("Webhook signature timestamp outside tolerance (t=%s).", timestamp)
        return False

    expected = compute_signature(payload, timestamp, secret)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


__all__ = [
    "StripeGateway",
    "compute_signature",
    "encode_form",
    "get_payment_gateway",
    "verify_stripe_signature",
]
