"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from dataclasses import dataclass

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_PLANS = ("standard", "plus")
KNOWN_PERIODS = ("monthly", "yearly")


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


@dataclass(frozen=True)
class ConfiguredPrice:
    """A provider price id bound to a plan, billing period and currency."""

    plan: str
    period: str
    currency: str
    price_id: str

    @property
    def is_yearly(self) -> bool:
        return self.period == "yearly"


@dataclass(frozen=True)
class PlanPriceThreshold:
    """
    Minimum unit amounts (minor units) at which a price counts as the plus tier.

    Used only when a price id is not configured explicitly.
    """

    currency: str
    plus_monthly_min_minor: int
    plus_yearly_min_minor: int


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Subscription Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Subscription lifecycle and token refills for the chat application"

    # User authentication (JWT issued by the chat application)
    user_jwt_secret: str = ""

    # Client application base URL (billing portal return target)
    client_domain: str = "http://localhost:3080"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "subscription-billing-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_webhook_tolerance_seconds: int = 300
    stripe_timeout_seconds: int = 20
    stripe_max_network_retries: int = 2

    # Price ids for the default currency
    default_currency: str = "usd"
    stripe_price_standard_monthly: str = ""
    stripe_price_standard_yearly: str = ""
    stripe_price_plus_monthly: str = ""
    stripe_price_plus_yearly: str = ""
    # Other currencies: "plan:period:currency=price_id,..."
    stripe_extra_price_ids: str = ""

    # Token amounts per plan (1000 credits = $0.001)
    subscription_standard_tokens: int = 300_000
    subscription_plus_tokens: int = 750_000

    # Fallback plan detection by amount: "currency:plus_monthly_min:plus_yearly_min,..."
    plan_price_thresholds: str = "usd:4000:40000"

    # Refill scheduler
    refill_scheduler_enabled: bool = True
    refill_run_hour_utc: int = 2
    refill_record_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not 0 <= self.refill_run_hour_utc <= 23:
            errors.append(f"REFILL_RUN_HOUR_UTC must be 0-23, got: {self.refill_run_hour_utc}")

        if self.subscription_standard_tokens < 0 or self.subscription_plus_tokens < 0:
            errors.append("Subscription token amounts must be non-negative")

        try:
            self.configured_prices()
            self.price_thresholds()
        except ValueError as exc:
            errors.append(str(exc))

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

    def configured_prices(self) -> list[ConfiguredPrice]:
        """All configured price ids, default currency first."""
        currency = self.default_currency.lower()
        prices = [
            ConfiguredPrice("standard", "monthly", currency, self.stripe_price_standard_monthly),
            ConfiguredPrice("standard", "yearly", currency, self.stripe_price_standard_yearly),
            ConfiguredPrice("plus", "monthly", currency, self.stripe_price_plus_monthly),
            ConfiguredPrice("plus", "yearly", currency, self.stripe_price_plus_yearly),
        ]
        prices = [p for p in prices if p.price_id]

        for entry in self.stripe_extra_price_ids.split(","):
            entry = entry.strip()
            if not entry:
                continue
            key, _, price_id = entry.partition("=")
            parts = [p.strip().lower() for p in key.split(":")]
            if len(parts) != 3 or not price_id.strip():
                raise ValueError(f"Invalid STRIPE_EXTRA_PRICE_IDS entry: {entry!r}")
            plan, period, extra_currency = parts
            if plan not in KNOWN_PLANS or period not in KNOWN_PERIODS:
                raise ValueError(f"Unknown plan or period in STRIPE_EXTRA_PRICE_IDS: {entry!r}")
            prices.append(ConfiguredPrice(plan, period, extra_currency, price_id.strip()))

        return prices

    def price_id_for(self, plan: str, period: str, currency: str | None = None) -> str | None:
        """Look up the configured price id for a plan, period and currency."""
        wanted = (currency or self.default_currency).lower()
        for price in self.configured_prices():
            if price.plan == plan and price.period == period and price.currency == wanted:
                return price.price_id
        return None

    def price_thresholds(self) -> list[PlanPriceThreshold]:
        """Parse PLAN_PRICE_THRESHOLDS."""
        thresholds = []
        for entry in self.plan_price_thresholds.split(","):
            entry = entry.strip()
            if not entry:
                continue
            parts = entry.split(":")
            if len(parts) != 3:
                raise ValueError(f"Invalid PLAN_PRICE_THRESHOLDS entry: {entry!r}")
            try:
                monthly, yearly = int(parts[1]), int(parts[2])
            except ValueError:
                raise ValueError(f"Invalid PLAN_PRICE_THRESHOLDS amounts: {entry!r}") from None
            thresholds.append(PlanPriceThreshold(parts[0].strip().lower(), monthly, yearly))
        return thresholds

    def tokens_for_plan(self, plan: str) -> int:
        """Token amount granted per billing period for a plan."""
        if plan == "standard":
            return self.subscription_standard_tokens
        if plan == "plus":
            return self.subscription_plus_tokens
        return 0


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
