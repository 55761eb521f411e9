"""Subscription lifecycle, checkout, entitlement and receipt endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.billing import (
    AccessCheckResponse,
    AddPaymentMethodRequest,
    BoostResponse,
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    FeatureAccessResponse,
    IapReceiptRequest,
    InvoiceListResponse,
    PaymentMethodListResponse,
    PaymentMethodSchema,
    PlanListResponse,
    PortalRequest,
    PortalResponse,
    SubscriptionSchema,
    TrialRequest,
    VerifyCheckoutRequest,
    VerifyCheckoutResponse,
)
from services import subscription_store
from services.billing_errors import BillingError
from services.billing_serializers import (
    serialize_boosts,
    serialize_decision,
    serialize_entitlements,
    serialize_invoice_page,
    serialize_payment_method,
    serialize_plans,
    serialize_subscription,
)
from services.checkout_service import checkout_service
from services.entitlement_service import entitlement_service
from services.iap_service import iap_service
from services.subscription_service import subscription_service
from web.deps import http_error, require_account_id

router = APIRouter(prefix="/subscription", tags=["Subscription"])

logger = logging.getLogger(__name__)


@router.get("/plans", response_model=PlanListResponse, summary="List the plans available for purchase.")
def list_plans() -> PlanListResponse:
    return serialize_plans(subscription_service.get_plans())


@router.get("/current", response_model=SubscriptionSchema, summary="Return the caller's subscription.")
def read_current_subscription(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    return serialize_subscription(subscription_service.get_current(db, account_id))


@router.post("/checkout", response_model=CheckoutResponse, summary="Create a hosted checkout session.")
def create_checkout(
    payload: CheckoutRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    try:
        session = checkout_service.create_checkout(
            db,
            account_id,
            price_id=payload.priceId,
            is_yearly=payload.isYearly,
            success_url=payload.successUrl,
            cancel_url=payload.cancelUrl,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return CheckoutResponse(sessionId=session.session_id, url=session.url)


@router.post("/verify", response_model=VerifyCheckoutResponse, summary="Apply a completed checkout session.")
def verify_checkout(
    payload: VerifyCheckoutRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> VerifyCheckoutResponse:
    try:
        verification = checkout_service.verify_checkout(db, account_id, payload.sessionId)
    except BillingError as exc:
        raise http_error(exc) from exc
    return VerifyCheckoutResponse(
        success=verification.success,
        paymentStatus=verification.payment_status,
        message=verification.message,
        subscription=serialize_subscription(verification.record) if verification.record is not None else None,
    )


@router.put("/upgrade", response_model=SubscriptionSchema, summary="Move the subscription to another price.")
def change_plan(
    payload: ChangePlanRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.change_plan(db, account_id, price_id=payload.priceId, is_yearly=payload.isYearly)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/cancel", response_model=SubscriptionSchema, summary="Cancel now or at the end of the period.")
def cancel_subscription(
    payload: CancelRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.cancel(db, account_id, immediately=payload.immediately)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/resume", response_model=SubscriptionSchema, summary="Undo a scheduled cancellation.")
def resume_subscription(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.resume(db, account_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/pause", response_model=SubscriptionSchema, summary="Pause payment collection.")
def pause_subscription(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.pause(db, account_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/unpause", response_model=SubscriptionSchema, summary="Resume payment collection.")
def unpause_subscription(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.unpause(db, account_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/trial", response_model=SubscriptionSchema, summary="Start the account's one-time trial.")
def start_trial(
    payload: TrialRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.start_trial(db, account_id, tier=payload.tier)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/sync", response_model=SubscriptionSchema, summary="Refresh the subscription from the processor.")
def sync_subscription(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.sync_subscription(db, account_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.post("/restore", response_model=SubscriptionSchema, summary="Restore previous purchases.")
def restore_purchases(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = subscription_service.restore_purchases(db, account_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_subscription(record)


@router.get("/payment-methods", response_model=PaymentMethodListResponse, summary="List saved payment methods.")
def list_payment_methods(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> PaymentMethodListResponse:
    methods = subscription_service.list_payment_methods(db, account_id)
    return PaymentMethodListResponse(paymentMethods=[serialize_payment_method(method) for method in methods])


@router.post(
    "/payment-methods",
    response_model=PaymentMethodSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Attach a payment method.",
)
def add_payment_method(
    payload: AddPaymentMethodRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> PaymentMethodSchema:
    try:
        method = subscription_service.add_payment_method(
            db, account_id, payload.paymentMethodId, set_default=payload.setDefault
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_payment_method(method)


@router.delete(
    "/payment-methods/{payment_method_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Detach a payment method.",
)
def remove_payment_method(
    payment_method_id: str,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> Response:
    try:
        subscription_service.remove_payment_method(db, account_id, payment_method_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/payment-methods/{payment_method_id}/default",
    response_model=PaymentMethodSchema,
    summary="Make a payment method the default.",
)
def set_default_payment_method(
    payment_method_id: str,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> PaymentMethodSchema:
    try:
        method = subscription_service.set_default_payment_method(db, account_id, payment_method_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_payment_method(method)


@router.post("/portal", response_model=PortalResponse, summary="Open a billing portal session.")
def create_portal_session(
    payload: PortalRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> PortalResponse:
    try:
        url = subscription_service.create_portal_session(db, account_id, return_url=payload.returnUrl)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PortalResponse(url=url)


@router.get("/invoices", response_model=InvoiceListResponse, summary="List paid invoices, newest first.")
def list_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> InvoiceListResponse:
    invoices, has_more = subscription_service.list_invoices(db, account_id, page=page, limit=limit)
    return serialize_invoice_page(invoices, page=page, limit=limit, has_more=has_more)


@router.get("/features", response_model=FeatureAccessResponse, summary="Resolve the caller's feature set.")
def read_feature_access(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> FeatureAccessResponse:
    return serialize_entitlements(entitlement_service.get(db, account_id))


@router.get("/features/{feature}", response_model=AccessCheckResponse, summary="Check a single feature.")
def check_feature_access(
    feature: str,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> AccessCheckResponse:
    try:
        decision = entitlement_service.check_access(db, account_id, feature)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_decision(feature, decision)


@router.get("/usage/{counter}", response_model=AccessCheckResponse, summary="Check a monthly usage counter.")
def check_usage_limit(
    counter: str,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> AccessCheckResponse:
    try:
        decision = entitlement_service.check_usage_limit(db, account_id, counter)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_decision(counter, decision)


@router.get("/boosts", response_model=BoostResponse, summary="Remaining profile boosts this period.")
def read_remaining_boosts(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> BoostResponse:
    return serialize_boosts(entitlement_service.remaining_boosts(db, account_id))


@router.post("/boosts/use", response_model=BoostResponse, summary="Consume one profile boost.")
def use_boost(
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> BoostResponse:
    try:
        decision = entitlement_service.use_boost(db, account_id)
        subscription_store.commit(db, context=f"boost for {account_id}")
    except BillingError as exc:
        raise http_error(exc) from exc
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "billing.limit_reached", "message": "No boosts remaining on the current plan."},
        )
    return serialize_boosts(decision)


@router.post("/iap/receipt", response_model=SubscriptionSchema, summary="Submit an app-store receipt.")
def submit_iap_receipt(
    payload: IapReceiptRequest,
    account_id: str = Depends(require_account_id),
    db: Session = Depends(get_db),
) -> SubscriptionSchema:
    try:
        record = iap_service.validate_receipt(
            db,
            account_id,
            platform=payload.platform,
            receipt=payload.receipt,
            product_id=payload.productId,
        )
    except BillingError as exc:
        logger.info("Receipt rejected for account=%s: %s", account_id, exc.code)
        raise http_error(exc) from exc
    return serialize_subscription(record)


__all__ = ["router"]
