"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from subscription_billing.models.api import BalanceType, RefillIntervalUnit


@dataclass(frozen=True)
class AccountSnapshot:
    """Immutable view of a user account and its subscription snapshot."""

    user_id: UUID
    email: str | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    subscription_status: str | None
    subscription_plan: str | None
    subscription_period_end: datetime | None


@dataclass(frozen=True)
class AccountUpdate:
    """
    Partial update of an account's subscription snapshot.

    Fields left as None are not written.
    """

    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    subscription_status: str | None = None
    subscription_plan: str | None = None
    subscription_period_end: datetime | None = None

    def values(self) -> dict[str, Any]:
        """Column values to write (non-None fields only)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class BalanceRecord:
    """Immutable balance state of one user."""

    balance_id: UUID
    user_id: UUID
    token_credits: int
    balance_type: BalanceType
    trial_credits: int
    subscription_credits: int
    subscription_plan: str | None
    subscription_period_start: datetime | None
    subscription_period_end: datetime | None
    auto_refill_enabled: bool
    refill_interval_value: int
    refill_interval_unit: RefillIntervalUnit
    refill_amount: int
    last_refill: datetime | None
    billing_cycle_day: int | None
    is_yearly_subscription: bool
    subscription_start_date: datetime | None
    last_refill_month: int | None
    last_refill_year: int | None


@dataclass(frozen=True)
class BalanceUpdate:
    """
    Absolute ("set") update of a balance record.

    Fields left as None are not written. Credits are always set, never added,
    so applying the same update twice yields the same record.
    """

    token_credits: int | None = None
    subscription_credits: int | None = None
    balance_type: BalanceType | None = None
    subscription_plan: str | None = None
    subscription_period_start: datetime | None = None
    subscription_period_end: datetime | None = None
    auto_refill_enabled: bool | None = None
    refill_interval_value: int | None = None
    refill_interval_unit: RefillIntervalUnit | None = None
    refill_amount: int | None = None
    last_refill: datetime | None = None
    billing_cycle_day: int | None = None
    is_yearly_subscription: bool | None = None
    subscription_start_date: datetime | None = None
    last_refill_month: int | None = None
    last_refill_year: int | None = None

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.refill_amount is not None and self.refill_amount < 0:
            raise ValueError(f"Refill amount cannot be negative: {self.refill_amount}")
        if self.billing_cycle_day is not None and not 1 <= self.billing_cycle_day <= 31:
            raise ValueError(f"Billing cycle day must be 1-31: {self.billing_cycle_day}")
        if self.last_refill_month is not None and not 1 <= self.last_refill_month <= 12:
            raise ValueError(f"Refill month must be 1-12: {self.last_refill_month}")

    def values(self) -> dict[str, Any]:
        """Column values to write (non-None fields only)."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = value.value if isinstance(value, Enum) else value
        return result


@dataclass(frozen=True)
class PlanResolution:
    """Outcome of mapping a provider price to a plan."""

    plan: str
    is_yearly: bool
    token_amount: int
    price_id: str | None
    source: str  # "configured", "provider_price" or "metadata"


@dataclass(frozen=True)
class StatusTransition:
    """Account status to store after a subscription change."""

    status: str
    reenable_auto_refill: bool = False


@dataclass(frozen=True)
class RefillSweepResult:
    """Counts from one refill sweep."""

    candidates: int = 0
    granted: int = 0
    skipped: int = 0
    disabled: int = 0
    errored: int = 0
    already_running: bool = False


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity of the caller, taken from the chat application's JWT."""

    user_id: UUID
    email: str | None = None
