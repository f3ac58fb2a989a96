"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union


@dataclass(frozen=True)
class ProviderCustomer:
    """Provider-agnostic customer."""

    customer_id: str
    email: str | None
    metadata_user_id: str | None


@dataclass(frozen=True)
class ProviderPrice:
    """Provider-agnostic recurring price."""

    price_id: str
    unit_amount: int | None  # minor units
    currency: str
    recurring_interval: str | None  # "month", "year", ...


@dataclass(frozen=True)
class ProviderSubscription:
    """
    Provider-agnostic subscription.

    Period bounds come from the subscription, or from its first item on
    provider API versions that moved them there.
    """

    subscription_id: str
    customer_id: str
    status: str
    cancel_at_period_end: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    price_id: str | None
    metadata_user_id: str | None
    metadata_plan: str | None
    metadata_period: str | None
    latest_invoice_id: str | None = None
    latest_invoice_status: str | None = None
    latest_invoice_billing_reason: str | None = None
    payment_client_secret: str | None = None


@dataclass(frozen=True)
class ProviderInvoice:
    """Provider-agnostic invoice."""

    invoice_id: str
    customer_id: str
    subscription_id: str | None
    billing_reason: str | None
    status: str | None


@dataclass(frozen=True)
class SetupIntentResult:
    """Provider-agnostic setup intent (saved card authorization)."""

    setup_intent_id: str
    client_secret: str
    status: str
    customer_id: str | None
    payment_method_id: str | None


# ============================================================================
# Webhook Events - closed set of variants decoded at the boundary
# ============================================================================


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.created / customer.subscription.updated"""

    event_id: str
    event_type: str
    subscription: ProviderSubscription


@dataclass(frozen=True)
class SubscriptionDeleted:
    """customer.subscription.deleted"""

    event_id: str
    event_type: str
    subscription: ProviderSubscription


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    """invoice.payment_succeeded / invoice.paid"""

    event_id: str
    event_type: str
    invoice: ProviderInvoice


@dataclass(frozen=True)
class InvoicePaymentFailed:
    """invoice.payment_failed"""

    event_id: str
    event_type: str
    invoice: ProviderInvoice


@dataclass(frozen=True)
class UnhandledEvent:
    """Any event type the service does not act on."""

    event_id: str
    event_type: str


WebhookEvent = Union[
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Every call may raise PaymentProviderError; connection failures and
    timeouts carry retryable=True.
    """

    async def find_or_create_customer(self, email: str, user_id: str) -> ProviderCustomer:
        """Return the customer with this email, creating it if absent."""
        ...

    async def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        ...

    async def create_setup_intent(
        self, customer_id: str, user_id: str, plan: str, period: str, price_id: str
    ) -> SetupIntentResult:
        """Create a card setup intent for a later subscription."""
        ...

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntentResult:
        ...

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Attach the payment method to the customer and make it the invoice default."""
        ...

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        user_id: str,
        plan: str,
        period: str,
    ) -> ProviderSubscription:
        """Create a subscription charged immediately with the saved payment method."""
        ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> ProviderSubscription:
        ...

    async def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        ...

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        ...

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a self-service billing portal session and return its URL."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and decode a webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification or decoding fails
        """
        ...
