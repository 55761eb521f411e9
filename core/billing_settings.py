"""Runtime configuration for the billing engine."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from core.env import env_bool, env_float, env_int, env_int_list, env_str
from core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_APPLE_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
DEFAULT_APPLE_SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"
DEFAULT_GOOGLE_PLAY_API_BASE = "https://androidpublisher.googleapis.com"
DEFAULT_RETRY_DELAYS_SECONDS = [3600, 6 * 3600, 24 * 3600]


@dataclass(frozen=True)
class BillingSettings:
    app_env: str = "development"
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = DEFAULT_STRIPE_API_BASE
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    webhook_skip_verification: bool = False
    pro_monthly_price_id: str = "price_pro_monthly"
    pro_yearly_price_id: str = "price_pro_yearly"
    premium_monthly_price_id: str = "price_premium_monthly"
    premium_yearly_price_id: str = "price_premium_yearly"
    currency: str = "usd"
    trial_days: int = 14
    retry_delays_seconds: Tuple[int, ...] = tuple(DEFAULT_RETRY_DELAYS_SECONDS)
    retry_max_attempts: int = 3
    retry_state_ttl_seconds: int = 7 * 24 * 3600
    webhook_retention_hours: int = 72
    redis_url: Optional[str] = None
    apple_shared_secret: Optional[str] = None
    apple_verify_url: str = DEFAULT_APPLE_VERIFY_URL
    apple_sandbox_verify_url: str = DEFAULT_APPLE_SANDBOX_VERIFY_URL
    google_play_package_name: Optional[str] = None
    google_play_access_token: Optional[str] = None
    google_play_api_base: str = DEFAULT_GOOGLE_PLAY_API_BASE
    notification_service_url: Optional[str] = None
    http_timeout_seconds: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_billing_settings() -> BillingSettings:
    app_env = (env_str("APP_ENV", "development") or "development").lower()
    skip_verification = env_bool("BILLING_WEBHOOK_SKIP_VERIFICATION", False)
    if skip_verification and app_env == "production":
        raise RuntimeError("BILLING_WEBHOOK_SKIP_VERIFICATION cannot be enabled when APP_ENV=production.")
    if skip_verification:
        logger.warning("Webhook signature verification is disabled (APP_ENV=%s).", app_env)

    delays = env_int_list("BILLING_RETRY_DELAYS_SECONDS", DEFAULT_RETRY_DELAYS_SECONDS, minimum=1)
    return BillingSettings(
        app_env=app_env,
        stripe_secret_key=env_str("STRIPE_SECRET_KEY"),
        stripe_api_base=env_str("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE) or DEFAULT_STRIPE_API_BASE,
        stripe_webhook_secret=env_str("STRIPE_WEBHOOK_SECRET"),
        webhook_tolerance_seconds=env_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300, minimum=0),
        webhook_skip_verification=skip_verification,
        pro_monthly_price_id=env_str("STRIPE_PRO_MONTHLY_PRICE_ID", "price_pro_monthly") or "price_pro_monthly",
        pro_yearly_price_id=env_str("STRIPE_PRO_YEARLY_PRICE_ID", "price_pro_yearly") or "price_pro_yearly",
        premium_monthly_price_id=env_str("STRIPE_PREMIUM_MONTHLY_PRICE_ID", "price_premium_monthly")
        or "price_premium_monthly",
        premium_yearly_price_id=env_str("STRIPE_PREMIUM_YEARLY_PRICE_ID", "price_premium_yearly")
        or "price_premium_yearly",
        currency=(env_str("BILLING_CURRENCY", "usd") or "usd").lower(),
        trial_days=env_int("BILLING_TRIAL_DAYS", 14, minimum=1),
        retry_delays_seconds=tuple(delays),
        retry_max_attempts=env_int("BILLING_RETRY_MAX_ATTEMPTS", 3, minimum=1),
        retry_state_ttl_seconds=env_int("BILLING_RETRY_STATE_TTL_SECONDS", 7 * 24 * 3600, minimum=60),
        webhook_retention_hours=env_int("BILLING_WEBHOOK_RETENTION_HOURS", 72, minimum=1),
        redis_url=env_str("BILLING_REDIS_URL"),
        apple_shared_secret=env_str("APPLE_SHARED_SECRET"),
        apple_verify_url=env_str("APPLE_VERIFY_URL", DEFAULT_APPLE_VERIFY_URL) or DEFAULT_APPLE_VERIFY_URL,
        apple_sandbox_verify_url=env_str("APPLE_SANDBOX_VERIFY_URL", DEFAULT_APPLE_SANDBOX_VERIFY_URL)
        or DEFAULT_APPLE_SANDBOX_VERIFY_URL,
        google_play_package_name=env_str("GOOGLE_PLAY_PACKAGE_NAME"),
        google_play_access_token=env_str("GOOGLE_PLAY_ACCESS_TOKEN"),
        google_play_api_base=env_str("GOOGLE_PLAY_API_BASE", DEFAULT_GOOGLE_PLAY_API_BASE)
        or DEFAULT_GOOGLE_PLAY_API_BASE,
        notification_service_url=env_str("NOTIFICATION_SERVICE_URL"),
        http_timeout_seconds=env_float("BILLING_HTTP_TIMEOUT_SECONDS", 10.0, minimum=0.5),
    )


@lru_cache(maxsize=1)
def get_billing_settings() -> BillingSettings:
    """Process-wide settings; tests call ``get_billing_settings.cache_clear()``."""
    return load_billing_settings()


__all__ = ["BillingSettings", "get_billing_settings", "load_billing_settings"]
