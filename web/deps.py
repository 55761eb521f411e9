"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, status

from services.billing_errors import BillingError


def require_account_id(x_account_id: Optional[str] = Header(default=None, alias="X-Account-Id")) -> str:
    """Account id asserted by the upstream authentication layer."""
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Authentication is required for this request."},
        )
    return account_id


def http_error(exc: BillingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


__all__ = ["http_error", "require_account_id"]
