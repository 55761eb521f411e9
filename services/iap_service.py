"""In-app purchase receipts: store verification and record activation."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import ensure_utc, utcnow
from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from models.subscription import SubscriptionRecord
from services import notification_service, subscription_store
from services.billing_errors import ConflictError, InvalidInputError, ReceiptValidationError
from services.payments.app_store_clients import (
    AppleReceiptClient,
    GooglePlayClient,
    StorePurchase,
    get_apple_client,
    get_google_client,
)
from services.payments.stripe_gateway import StripeGateway, get_payment_gateway
from services.retry_scheduler import RetryScheduler, get_retry_scheduler
from services.subscription_state import activation_changes, is_entitled

logger = logging.getLogger(__name__)

IAP_PRODUCTS: Dict[str, Tuple[PlanTier, bool]] = {
    "com.gigmatch.subscription.pro.monthly": (PlanTier.PRO, False),
    "com.gigmatch.subscription.pro.yearly": (PlanTier.PRO, True),
    "com.gigmatch.subscription.premium.monthly": (PlanTier.PREMIUM, False),
    "com.gigmatch.subscription.premium.yearly": (PlanTier.PREMIUM, True),
    "gigmatch_pro_monthly": (PlanTier.PRO, False),
    "gigmatch_pro_yearly": (PlanTier.PRO, True),
    "gigmatch_premium_monthly": (PlanTier.PREMIUM, False),
    "gigmatch_premium_yearly": (PlanTier.PREMIUM, True),
}

_PLATFORM_ALIASES = {
    "apple": BillingSource.APPLE,
    "ios": BillingSource.APPLE,
    "google": BillingSource.GOOGLE,
    "android": BillingSource.GOOGLE,
}


def resolve_platform(platform: str) -> BillingSource:
    source = _PLATFORM_ALIASES.get((platform or "").strip().lower())
    if source is None:
        raise InvalidInputError(f"Unsupported platform '{platform}'.", code="billing.invalid_platform")
    return source


def synthetic_subscription_id(source: BillingSource, transaction_id: str) -> str:
    return f"iap:{source.value}:{transaction_id}"


def tier_for_product(product_id: str) -> Tuple[PlanTier, bool]:
    mapped = IAP_PRODUCTS.get(product_id)
    if mapped is None:
        raise ReceiptValidationError(f"Unknown product '{product_id}'.", code="billing.unknown_product")
    return mapped


class IapService:
    def __init__(
        self,
        *,
        apple_factory: Optional[Callable[[], AppleReceiptClient]] = None,
        google_factory: Optional[Callable[[], GooglePlayClient]] = None,
        gateway_factory: Optional[Callable[[], StripeGateway]] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        notifier: Optional[notification_service.Notifier] = None,
    ) -> None:
        self._apple_factory = apple_factory or get_apple_client
        self._google_factory = google_factory or get_google_client
        self._gateway_factory = gateway_factory or get_payment_gateway
        self._retry_scheduler = retry_scheduler
        self._notifier = notifier or notification_service.notify_account

    @property
    def retry_scheduler(self) -> RetryScheduler:
        return self._retry_scheduler or get_retry_scheduler()

    def _verify(self, source: BillingSource, receipt: str, product_id: Optional[str]) -> StorePurchase:
        if not receipt or not receipt.strip():
            raise InvalidInputError("Receipt is required.", code="billing.receipt_missing")
        if source == BillingSource.APPLE:
            return self._apple_factory().latest_purchase(receipt, product_id=product_id)
        if not product_id:
            raise InvalidInputError("Google Play receipts require a product id.", code="billing.product_missing")
        return self._google_factory().purchase(product_id, receipt)

    def validate_receipt(
        self,
        db: Session,
        account_id: str,
        *,
        platform: str,
        receipt: str,
        product_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Verify a store receipt and activate (or renew) the account's subscription."""
        source = resolve_platform(platform)
        purchase = self._verify(source, receipt, product_id)
        tier, is_yearly = tier_for_product(purchase.product_id)

        now = utcnow()
        expires_at = ensure_utc(purchase.expires_at)
        if expires_at is None or expires_at <= now:
            raise ReceiptValidationError("The purchase has expired.", code="billing.receipt_expired")

        subscription_id = synthetic_subscription_id(source, purchase.transaction_id)
        owner = subscription_store.find_by_processor_subscription(db, subscription_id)
        if owner is not None and owner.account_id != account_id:
            logger.warning("Receipt %s is attached to another account; rejecting.", subscription_id)
            raise ConflictError("This purchase is already linked to another account.", code="billing.receipt_in_use")

        existing = subscription_store.get_record(db, account_id)
        if (
            existing is not None
            and is_entitled(existing.status, existing.tier)
            and existing.billing_source == BillingSource.CARD.value
        ):
            logger.warning(
                "Account %s has a live card subscription %s; store purchase %s takes over the record.",
                account_id,
                existing.processor_subscription_id,
                subscription_id,
            )
            if existing.processor_subscription_id and not existing.cancel_at_period_end:
                # Stop the card renewal before the record stops following its webhooks.
                self._gateway_factory().cancel_subscription(existing.processor_subscription_id, immediately=False)

        changes = activation_changes(
            tier=tier,
            is_yearly=is_yearly,
            period_start=ensure_utc(purchase.purchased_at) or now,
            period_end=expires_at,
            source=source,
            status=SubscriptionStatus.TRIALING if purchase.is_trial else SubscriptionStatus.ACTIVE,
            subscription_id=subscription_id,
        )
        try:
            record = subscription_store.upsert_record(db, account_id, changes, now=now)
            subscription_store.commit(db, context=f"iap receipt for {account_id}")
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError(
                "This purchase is already linked to another account.",
                code="billing.receipt_in_use",
            ) from exc

        self.retry_scheduler.reset(record.processor_customer_id)
        logger.info(
            "Store purchase %s activated %s for account=%s until %s.",
            subscription_id,
            tier.value,
            account_id,
            expires_at.isoformat(),
        )
        self._notifier(
            account_id,
            notification_service.KIND_ACTIVATED,
            "Subscription active",
            f"Your {tier.value.title()} subscription is active.",
            {"platform": source.value, "productId": purchase.product_id},
        )
        return record


iap_service = IapService()

__all__ = [
    "IAP_PRODUCTS",
    "IapService",
    "iap_service",
    "resolve_platform",
    "synthetic_subscription_id",
    "tier_for_product",
]
