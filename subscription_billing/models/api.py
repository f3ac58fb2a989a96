"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class BalanceType(str, Enum):
    """Balance type enumeration."""

    TRIAL = "trial"
    SUBSCRIPTION = "subscription"


class SubscriptionPlan(str, Enum):
    """Subscription plan tiers."""

    STANDARD = "standard"
    PLUS = "plus"


class BillingPeriod(str, Enum):
    """Billing period of a subscription price."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class RefillIntervalUnit(str, Enum):
    """Unit of the nominal refill cadence."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class SubscriptionStatus(str, Enum):
    """
    Subscription status values stored on the account.

    Mirrors the provider's states plus the synthetic CANCEL_AT_PERIOD_END.
    The account column is free-form, so unknown provider states are stored as-is.
    """

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


# A pending cancellation keeps the paid period funded until the deletion event
ENTITLED_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.CANCEL_AT_PERIOD_END.value,
    }
)


# ============================================================================
# Subscription Checkout Models
# ============================================================================


class _PlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=3, max_length=64, description='e.g. "standard-monthly"')
    currency: str | None = Field(None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str | None) -> str | None:
        return v.lower() if v else v


class SetupIntentRequest(_PlanRequest):
    """POST /v1/subscriptions/setup-intent request body."""


class SetupIntentResponse(BaseModel):
    """POST /v1/subscriptions/setup-intent response."""

    client_secret: str
    setup_intent_id: str


class CreateSubscriptionRequest(_PlanRequest):
    """POST /v1/subscriptions request body."""

    setup_intent_id: str = Field(..., min_length=1, max_length=255)


class CreateSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions response."""

    subscription_id: str
    client_secret: str | None = None
    status: str


# ============================================================================
# Subscription Status Models
# ============================================================================


class SubscriptionStatusResponse(BaseModel):
    """GET /v1/subscriptions/status response."""

    status: str
    period_end: datetime | None = None
    cancel_at_period_end: bool = False


class MySubscriptionResponse(BaseModel):
    """GET /v1/subscriptions/mine response."""

    has_subscription: bool
    plan: str | None = None
    status: str | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool = False


class CancelSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions/cancel response."""

    success: bool
    cancel_at_period_end: bool
    period_end: datetime | None = None


class ReactivateSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions/reactivate response."""

    success: bool
    cancel_at_period_end: bool
    status: str


class PortalSessionResponse(BaseModel):
    """POST /v1/billing-portal response."""

    url: str


# ============================================================================
# Balance Models
# ============================================================================


class BalanceResponse(BaseModel):
    """
    GET /v1/balance response.

    Refill fields are null when auto-refill is disabled.
    """

    token_credits: int
    balance_type: BalanceType
    trial_credits: int = 0
    subscription_credits: int = 0
    subscription_plan: str | None = None
    subscription_period_start: datetime | None = None
    subscription_period_end: datetime | None = None
    auto_refill_enabled: bool = False
    refill_interval_value: int | None = None
    refill_interval_unit: RefillIntervalUnit | None = None
    last_refill: datetime | None = None
    refill_amount: int | None = None
    has_active_subscription: bool
    is_trial_user: bool
    is_trial_depleted: bool


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """POST /v1/webhooks/stripe response."""

    received: bool = True


class ErrorResponse(BaseModel):
    """Error body returned by all endpoints."""

    error: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    service: str
    version: str
