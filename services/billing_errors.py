"""Error taxonomy shared by billing services and routers."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base class for billing failures surfaced to callers."""

    default_code = "billing.error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.payload = payload or {}

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.retryable:
            detail["retryable"] = True
        return detail


class NotFoundError(BillingError):
    """No subscription, payment method or invoice matches the request."""

    default_code = "billing.not_found"
    status_code = 404


class ConflictError(BillingError):
    """The request conflicts with the account's current billing state."""

    default_code = "billing.conflict"
    status_code = 409


class InvalidInputError(BillingError):
    default_code = "billing.invalid_input"
    status_code = 400


class ReceiptValidationError(InvalidInputError):
    """The store rejected the receipt, or it names an unknown or expired purchase."""

    default_code = "billing.receipt_invalid"


class ExternalServiceError(BillingError):
    """The payment processor or an app store failed; the outcome is unknown."""

    default_code = "billing.external_service"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code, payload=payload)
        self.upstream_status = upstream_status


class SignatureVerificationFailed(BillingError):
    default_code = "billing.webhook_signature_invalid"
    status_code = 400


__all__ = [
    "BillingError",
    "ConflictError",
    "ExternalServiceError",
    "InvalidInputError",
    "NotFoundError",
    "ReceiptValidationError",
    "SignatureVerificationFailed",
]
