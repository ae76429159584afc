from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


DEFAULT_REGIONAL_TAX_RATES: dict[str, float] = {
    "ID": 0.06,
    "CA": 0.0725,
    "NY": 0.08,
    "TX": 0.0625,
    "FL": 0.06,
    "WA": 0.065,
    "NJ": 0.06625,
    "IL": 0.0625,
    "PA": 0.06,
    "OH": 0.0575,
}


class Settings(BaseSettings):
    """
    Main configuration for the payment reconciliation service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Payment Reconciler"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    REDIS_URL: Optional[str] = None

    # Stripe gateway
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_BASE: str = "https://api.stripe.com/v1"
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 20.0
    # Development-only escape hatch: parse webhook bodies without verification.
    ALLOW_UNSIGNED_WEBHOOKS: bool = False

    # Ingress gate
    WEBHOOK_MAX_BODY_BYTES: int = 1024 * 1024
    WEBHOOK_RATE_LIMIT: str = "100/minute"
    RATELIMIT_ENABLED: bool = True
    # Number of trusted reverse-proxy hops when resolving client IP from XFF.
    TRUSTED_PROXY_HOPS: int = 1

    # Tax reconciliation
    REGIONAL_TAX_RATES: dict[str, float] = dict(DEFAULT_REGIONAL_TAX_RATES)
    TAX_ESTIMATE_MAX_RATIO: float = 0.15
    TAX_RECHECK_DELAYS_SECONDS: list[int] = [15, 30, 60]
    GATEWAY_FEE_PERCENT: float = 0.029
    GATEWAY_FIXED_FEES: dict[str, float] = {"USD": 0.30, "EUR": 0.25}
    GATEWAY_DEFAULT_FIXED_FEE: float = 0.30

    # Metadata resolution poll (total wait = interval * attempts)
    METADATA_POLL_INTERVAL_SECONDS: float = 0.5
    METADATA_POLL_ATTEMPTS: int = 5

    # Background jobs
    JOB_POLL_INTERVAL_SECONDS: int = 5
    JOB_SCHEDULER_ENABLED: bool = True
    INTERNAL_JOB_SECRET: Optional[str] = None

    # Renewal reminders
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    EMAIL_NOTIFY_URL: Optional[str] = None
    EMAIL_NOTIFY_COUNTRIES: list[str] = ["USA"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_tax_config()
        self._validate_ingress_config()
        if self.TESTING:
            return self

        self._validate_webhook_security()
        self._validate_storage_config()
        return self

    def _validate_tax_config(self) -> None:
        if not 0 < self.TAX_ESTIMATE_MAX_RATIO < 1:
            raise ValueError("TAX_ESTIMATE_MAX_RATIO must be between 0 and 1.")
        for region, rate in self.REGIONAL_TAX_RATES.items():
            if not 0 <= rate < 1:
                raise ValueError(f"Tax rate for {region} must be in [0, 1).")
        delays = self.TAX_RECHECK_DELAYS_SECONDS
        if any(delay <= 0 for delay in delays):
            raise ValueError("TAX_RECHECK_DELAYS_SECONDS must be positive.")
        if delays != sorted(delays):
            raise ValueError("TAX_RECHECK_DELAYS_SECONDS must be ascending.")
        if self.GATEWAY_FEE_PERCENT < 0:
            raise ValueError("GATEWAY_FEE_PERCENT must be >= 0.")

    def _validate_ingress_config(self) -> None:
        if self.WEBHOOK_MAX_BODY_BYTES <= 0:
            raise ValueError("WEBHOOK_MAX_BODY_BYTES must be > 0.")
        if self.METADATA_POLL_ATTEMPTS < 0 or self.METADATA_POLL_INTERVAL_SECONDS < 0:
            raise ValueError("Metadata poll settings must be >= 0.")
        if self.TRUSTED_PROXY_HOPS < 0:
            raise ValueError("TRUSTED_PROXY_HOPS must be >= 0.")

    def _validate_webhook_security(self) -> None:
        """Production deployments never accept unverified gateway events."""
        if not self.is_production:
            return
        if not self.STRIPE_WEBHOOK_SECRET:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production.")
        if self.ALLOW_UNSIGNED_WEBHOOKS:
            raise ValueError(
                "SECURITY ERROR: ALLOW_UNSIGNED_WEBHOOKS must be false in production."
            )

    def _validate_storage_config(self) -> None:
        if not self.is_production:
            return
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if not self.REDIS_URL:
            raise ValueError(
                "REDIS_URL is required in production for shared rate-limit counters."
            )
