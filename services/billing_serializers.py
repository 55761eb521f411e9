"""Shared helpers for serialising billing records into API schemas."""

from __future__ import annotations

from typing import Optional, Sequence

from models.subscription import Invoice, PaymentMethod, SubscriptionRecord
from schemas.api.billing import (
    AccessCheckResponse,
    BoostResponse,
    FeatureAccessResponse,
    InvoiceListResponse,
    InvoiceSchema,
    PaymentMethodSchema,
    PlanListResponse,
    PlanSchema,
    SubscriptionSchema,
)
from services.entitlement_service import EntitlementDecision, Entitlements, entitlement_service
from services.plan_catalog_service import Plan


def serialize_plan(plan: Plan) -> PlanSchema:
    return PlanSchema(
        id=plan.id,
        tier=plan.tier,
        name=plan.name,
        description=plan.description,
        monthlyPrice=plan.monthly_price,
        yearlyPrice=plan.yearly_price,
        priceIdMonthly=plan.price_id_monthly,
        priceIdYearly=plan.price_id_yearly,
        features=list(plan.features),
        isPopular=plan.is_popular,
    )


def serialize_plans(plans: Sequence[Plan]) -> PlanListResponse:
    return PlanListResponse(plans=[serialize_plan(plan) for plan in plans])


def serialize_subscription(record: Optional[SubscriptionRecord]) -> SubscriptionSchema:
    """Render a record, or the free view for accounts that never subscribed."""
    resolved = entitlement_service.entitlements_for(record)
    if record is None:
        return SubscriptionSchema(tier=resolved.tier, isActive=False, features=dict(resolved.features))
    return SubscriptionSchema(
        tier=resolved.tier,
        status=record.status,
        isActive=resolved.is_active,
        billingSource=record.billing_source,
        isYearlyBilling=bool(record.is_yearly_billing),
        currentPeriodStart=record.current_period_start,
        currentPeriodEnd=record.current_period_end,
        cancelAtPeriodEnd=bool(record.cancel_at_period_end),
        canceledAt=record.canceled_at,
        trialStart=record.trial_start,
        trialEnd=record.trial_end,
        features=dict(resolved.features),
    )


def serialize_entitlements(entitlements: Entitlements) -> FeatureAccessResponse:
    return FeatureAccessResponse(
        tier=entitlements.tier,
        isActive=entitlements.is_active,
        features=dict(entitlements.features),
    )


def serialize_decision(feature: str, decision: EntitlementDecision) -> AccessCheckResponse:
    return AccessCheckResponse(
        feature=feature,
        canAccess=decision.allowed,
        remaining=decision.remaining,
        limit=decision.limit,
        used=decision.used,
    )


def serialize_boosts(decision: EntitlementDecision) -> BoostResponse:
    return BoostResponse(canBoost=decision.allowed, remaining=decision.remaining, used=decision.used)


def serialize_payment_method(method: PaymentMethod) -> PaymentMethodSchema:
    return PaymentMethodSchema(
        id=method.external_payment_method_id,
        type=method.type,
        brand=method.brand,
        last4=method.last4,
        expMonth=method.exp_month,
        expYear=method.exp_year,
        isDefault=bool(method.is_default),
    )


def serialize_invoice(invoice: Invoice) -> InvoiceSchema:
    return InvoiceSchema(
        id=invoice.external_invoice_id,
        amount=invoice.amount,
        amountPaid=invoice.amount_paid,
        currency=invoice.currency,
        status=invoice.status,
        paidAt=invoice.paid_at,
        periodStart=invoice.period_start,
        periodEnd=invoice.period_end,
        createdAt=invoice.created_at,
    )


def serialize_invoice_page(
    invoices: Sequence[Invoice], *, page: int, limit: int, has_more: bool
) -> InvoiceListResponse:
    return InvoiceListResponse(
        invoices=[serialize_invoice(invoice) for invoice in invoices],
        page=page,
        limit=limit,
        hasMore=has_more,
    )


__all__ = [
    "serialize_boosts",
    "serialize_decision",
    "serialize_entitlements",
    "serialize_invoice",
    "serialize_invoice_page",
    "serialize_payment_method",
    "serialize_plan",
    "serialize_plans",
    "serialize_subscription",
]
