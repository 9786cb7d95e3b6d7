from decimal import Decimal
from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

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


class Settings(BaseSettings):
    """
    Main configuration for the VoiceConnect billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    APP_NAME: str = "VoiceConnect Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Celery / scheduler
    REDIS_URL: Optional[str] = None
    TRIAL_RECONCILIATION_INTERVAL_MINUTES: int = 60

    # Stripe (platform account + Connect)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PLATFORM_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_CONNECT_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Billing policy
    AGENCY_TRIAL_DAYS: int = 14
    CLIENT_TRIAL_DAYS: int = 7
    REFERRAL_COMMISSION_RATE: Decimal = Decimal("0.20")
    REFERRAL_MIN_PAYOUT_CENTS: int = 1000
    PAYOUT_CURRENCY: str = "usd"

    # Provisioning collaborator (Vapi)
    VAPI_API_KEY: Optional[str] = None
    VAPI_BASE_URL: str = "https://api.vapi.ai"
    BACKEND_URL: str = "http://localhost:8000"

    # Notification collaborator (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    NOTIFICATION_FROM_EMAIL: str = "VoiceAI Connect <notifications@voiceaiconnect.com>"
    FRONTEND_URL: str = "http://localhost:3000"
    PLATFORM_DOMAIN: str = "myvoiceaiconnect.com"

    # Outbound calls are short and never retried inline
    OUTBOUND_TIMEOUT_SECONDS: float = 5.0

    # Operator surfaces
    ADMIN_API_SECRET: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_billing_config()
        self._validate_operator_secrets()
        return self

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    def _validate_billing_config(self) -> None:
        """Validates Stripe credentials and commission policy."""
        if not (Decimal("0") <= self.REFERRAL_COMMISSION_RATE <= Decimal("1")):
            raise ValueError("REFERRAL_COMMISSION_RATE must be between 0 and 1.")
        if self.REFERRAL_MIN_PAYOUT_CENTS < 1:
            raise ValueError("REFERRAL_MIN_PAYOUT_CENTS must be >= 1.")
        if self.AGENCY_TRIAL_DAYS < 0 or self.CLIENT_TRIAL_DAYS < 0:
            raise ValueError("Trial lengths must be non-negative.")
        if self.OUTBOUND_TIMEOUT_SECONDS <= 0 or self.OUTBOUND_TIMEOUT_SECONDS > 30:
            raise ValueError("OUTBOUND_TIMEOUT_SECONDS must be in (0, 30].")

        if self.is_production:
            if not self.STRIPE_SECRET_KEY or self.STRIPE_SECRET_KEY.startswith(
                "sk_test"
            ):
                raise ValueError(
                    "STRIPE_SECRET_KEY must be a live key (sk_live_...) in production."
                )
            if not self.STRIPE_PLATFORM_WEBHOOK_SECRET:
                raise ValueError("STRIPE_PLATFORM_WEBHOOK_SECRET is required in production.")
            if not self.STRIPE_CONNECT_WEBHOOK_SECRET:
                raise ValueError("STRIPE_CONNECT_WEBHOOK_SECRET is required in production.")

    def _validate_operator_secrets(self) -> None:
        if not self.is_production:
            return
        for name, value in {
            "ADMIN_API_SECRET": self.ADMIN_API_SECRET,
            "CRON_SECRET": self.CRON_SECRET,
        }.items():
            if not value or len(value) < 32:
                raise ValueError(f"{name} must be set to a secure value (>= 32 chars).")
