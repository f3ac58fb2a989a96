"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class AccountNotFoundError(BillingError):
    """Raised when a user account doesn't exist."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"Account not found: {lookup}")


class BalanceNotFoundError(BillingError):
    """Raised when a user has no balance record."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"Balance not found for user {user_id}")


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription id is not the caller's own subscription."""

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class InvalidPlanError(BillingError):
    """Raised when a requested plan id is malformed or has no configured price."""

    def __init__(self, plan_id: str, reason: str) -> None:
        self.plan_id = plan_id
        self.reason = reason
        super().__init__(f"Invalid subscription plan {plan_id!r}: {reason}")


class PlanResolutionError(BillingError):
    """Raised when a provider price cannot be mapped to a known plan."""

    def __init__(self, price_id: str | None) -> None:
        self.price_id = price_id
        super().__init__(f"Could not resolve plan for price {price_id}")


class SubscriptionStateError(BillingError):
    """Raised when a request doesn't fit the account's subscription state."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.message = message
        self.retryable = retryable
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class WebhookNotConfiguredError(BillingError):
    """Raised when a webhook arrives but no signing secret is configured."""

    def __init__(self) -> None:
        super().__init__("Webhook secret not configured")


class AuthenticationError(BillingError):
    """Raised when authentication fails (missing or invalid user token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
