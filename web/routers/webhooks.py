"""Inbound payment-processor webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from schemas.api.billing import WebhookAckResponse
from services.billing_errors import SignatureVerificationFailed
from services.payments import webhook_ledger
from services.webhook_reconciler import get_webhook_reconciler
from web.deps import http_error

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = logging.getLogger(__name__)


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Receive a Stripe webhook delivery.",
)
async def handle_stripe_webhook(request: Request) -> WebhookAckResponse:
    raw_body = await request.body()
    signature_header = request.headers.get("stripe-signature")
    reconciler = get_webhook_reconciler()
    try:
        outcome = await run_in_threadpool(reconciler.handle_webhook, raw_body, signature_header)
    except SignatureVerificationFailed as exc:
        raise http_error(exc) from exc
    if outcome.result == webhook_ledger.RESULT_FAILED:
        logger.error("Webhook %s acknowledged after handler failure: %s", outcome.event_id, outcome.error)
    return WebhookAckResponse(received=True, result=outcome.result, eventId=outcome.event_id)


__all__ = ["router"]
