"""Subscription and billing API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from core.plan_constants import PlanTier

FeatureValue = Union[bool, int]


class PlanSchema(BaseModel):
    id: str
    tier: PlanTier
    name: str
    description: str
    monthlyPrice: int = Field(..., description="Monthly price in minor currency units.")
    yearlyPrice: int = Field(..., description="Yearly price in minor currency units.")
    priceIdMonthly: Optional[str] = Field(default=None, description="Processor price id for monthly billing.")
    priceIdYearly: Optional[str] = Field(default=None, description="Processor price id for yearly billing.")
    features: List[str] = Field(default_factory=list, description="Marketing feature list.")
    isPopular: bool = False


class PlanListResponse(BaseModel):
    plans: List[PlanSchema]


class SubscriptionSchema(BaseModel):
    tier: PlanTier
    status: Optional[str] = Field(default=None, description="Subscription status; null when the account never subscribed.")
    isActive: bool = Field(..., description="Whether the tier's entitlements are currently granted.")
    billingSource: Optional[str] = None
    isYearlyBilling: bool = False
    currentPeriodStart: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    cancelAtPeriodEnd: bool = False
    canceledAt: Optional[datetime] = None
    trialStart: Optional[datetime] = None
    trialEnd: Optional[datetime] = None
    features: Dict[str, FeatureValue] = Field(default_factory=dict, description="Resolved feature set.")


class CheckoutRequest(BaseModel):
    priceId: str = Field(..., min_length=1, description="Processor price id of the plan being purchased.")
    isYearly: bool = Field(default=False, description="Whether the price is the yearly variant.")
    successUrl: str = Field(..., min_length=1)
    cancelUrl: str = Field(..., min_length=1)


class CheckoutResponse(BaseModel):
    sessionId: str
    url: Optional[str] = None


class VerifyCheckoutRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


class VerifyCheckoutResponse(BaseModel):
    success: bool
    paymentStatus: Optional[str] = None
    message: Optional[str] = None
    subscription: Optional[SubscriptionSchema] = None


class ChangePlanRequest(BaseModel):
    priceId: str = Field(..., min_length=1)
    isYearly: bool = False


class CancelRequest(BaseModel):
    immediately: bool = Field(default=False, description="Cancel now instead of at the end of the period.")


class TrialRequest(BaseModel):
    tier: PlanTier = Field(default=PlanTier.PRO, description="Paid tier unlocked during the trial.")


class PaymentMethodSchema(BaseModel):
    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None
    isDefault: bool = False


class PaymentMethodListResponse(BaseModel):
    paymentMethods: List[PaymentMethodSchema]


class AddPaymentMethodRequest(BaseModel):
    paymentMethodId: str = Field(..., min_length=1)
    setDefault: bool = False


class PortalRequest(BaseModel):
    returnUrl: str = Field(..., min_length=1)


class PortalResponse(BaseModel):
    url: str


class InvoiceSchema(BaseModel):
    id: str
    amount: int
    amountPaid: int
    currency: str
    status: str
    paidAt: Optional[datetime] = None
    periodStart: Optional[datetime] = None
    periodEnd: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceSchema]
    page: int
    limit: int
    hasMore: bool


class FeatureAccessResponse(BaseModel):
    tier: PlanTier
    isActive: bool
    features: Dict[str, FeatureValue]


class AccessCheckResponse(BaseModel):
    feature: str
    canAccess: bool
    remaining: Optional[int] = Field(default=None, description="Remaining allowance; -1 means unlimited.")
    limit: Optional[int] = None
    used: Optional[int] = None


class BoostResponse(BaseModel):
    canBoost: bool
    remaining: Optional[int] = Field(default=None, description="Remaining boosts this period; -1 means unlimited.")
    used: Optional[int] = None


class IapReceiptRequest(BaseModel):
    platform: Literal["ios", "android", "apple", "google"]
    receipt: str = Field(..., min_length=1, description="App Store receipt data or Google Play purchase token.")
    productId: Optional[str] = Field(default=None, description="Store product id; required for Google Play.")


class WebhookAckResponse(BaseModel):
    received: bool = True
    result: str
    eventId: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database: str
    error: Optional[str] = None


__all__ = [
    "AccessCheckResponse",
    "AddPaymentMethodRequest",
    "BoostResponse",
    "CancelRequest",
    "ChangePlanRequest",
    "CheckoutRequest",
    "CheckoutResponse",
    "FeatureAccessResponse",
    "HealthResponse",
    "IapReceiptRequest",
    "InvoiceListResponse",
    "InvoiceSchema",
    "PaymentMethodListResponse",
    "PaymentMethodSchema",
    "PlanListResponse",
    "PlanSchema",
    "PortalRequest",
    "PortalResponse",
    "SubscriptionSchema",
    "TrialRequest",
    "VerifyCheckoutRequest",
    "VerifyCheckoutResponse",
    "WebhookAckResponse",
]
