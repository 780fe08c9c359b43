"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Marketplace Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Payment reconciliation and creator payouts for the tool marketplace"
    cors_allow_origins: str = "*"  # Comma-separated

    # User authentication - HS256 bearer tokens issued by the marketplace frontend
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_publishable_key: str = ""  # pk_test_... or pk_live_...
    stripe_timeout_seconds: float = 30.0
    currency: str = "usd"

    # Ledger rules
    platform_fee_percent: int = 30
    minimum_payout_minor: int = 5000  # $50.00 in cents
    subscription_license_days: int = 30

    # Payout rate limiting (disabled when redis_url is empty)
    redis_url: str = ""
    payout_rate_limit_requests: int = 3
    payout_rate_limit_window_seconds: int = 3600

    # Frontend (Stripe Connect onboarding links)
    frontend_url: str = "http://localhost:5000"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "marketplace-billing-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing or if the
        ledger rules are nonsensical (a bad fee split corrupts every purchase).
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not 0 <= self.platform_fee_percent <= 100:
            errors.append(
                f"PLATFORM_FEE_PERCENT must be between 0 and 100, got: {self.platform_fee_percent}"
            )

        if self.minimum_payout_minor <= 0:
            errors.append(
                f"MINIMUM_PAYOUT_MINOR must be positive, got: {self.minimum_payout_minor}"
            )

        if self.payout_rate_limit_requests <= 0 or self.payout_rate_limit_window_seconds <= 0:
            errors.append("PAYOUT_RATE_LIMIT_REQUESTS and _WINDOW_SECONDS must be positive")

        if self.subscription_license_days <= 0:
            errors.append(
                f"SUBSCRIPTION_LICENSE_DAYS must be positive, got: {self.subscription_license_days}"
            )

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
