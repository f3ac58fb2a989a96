"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Raw Stripe payloads are decoded into typed models at this
boundary and never leave it.
"""

import json
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from subscription_billing.exceptions import PaymentProviderError, WebhookVerificationError
from subscription_billing.services.payment_provider import (
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ProviderCustomer,
    ProviderInvoice,
    ProviderPrice,
    ProviderSubscription,
    SetupIntentResult,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    WebhookEvent,
)

logger = get_logger(__name__)

SUBSCRIPTION_CHANGED_EVENTS = frozenset(
    {"customer.subscription.created", "customer.subscription.updated"}
)
INVOICE_SUCCEEDED_EVENTS = frozenset({"invoice.payment_succeeded", "invoice.paid"})


# ============================================================================
# Payload decoding
# ============================================================================


def _get(obj: Any, key: str) -> Any:
    """Read a key from a StripeObject or decoded JSON object; None if absent."""
    if obj is None or isinstance(obj, str):
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _get_path(obj: Any, *keys: str) -> Any:
    for key in keys:
        obj = _get(obj, key)
        if obj is None:
            return None
    return obj


def _first_item(obj: Any) -> Any:
    data = _get_path(obj, "items", "data")
    if not data:
        return None
    return data[0]


def _object_id(value: Any) -> str | None:
    """Id of a field that is either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    object_id = _get(value, "id")
    return str(object_id) if object_id else None


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def parse_subscription(obj: Any) -> ProviderSubscription:
    """Decode a Stripe subscription object."""
    item = _first_item(obj)
    metadata = _get(obj, "metadata")
    latest_invoice = _get(obj, "latest_invoice")

    # Newer API versions carry the period bounds on the subscription item
    period_start = _get(obj, "current_period_start") or _get(item, "current_period_start")
    period_end = _get(obj, "current_period_end") or _get(item, "current_period_end")

    client_secret = _get_path(latest_invoice, "confirmation_secret", "client_secret") or _get_path(
        latest_invoice, "payment_intent", "client_secret"
    )

    return ProviderSubscription(
        subscription_id=str(_get(obj, "id")),
        customer_id=_object_id(_get(obj, "customer")) or "",
        status=str(_get(obj, "status") or ""),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        price_id=_object_id(_get(item, "price")),
        metadata_user_id=_get(metadata, "userId"),
        metadata_plan=_get(metadata, "plan"),
        metadata_period=_get(metadata, "period"),
        latest_invoice_id=_object_id(latest_invoice),
        latest_invoice_status=_get(latest_invoice, "status"),
        latest_invoice_billing_reason=_get(latest_invoice, "billing_reason"),
        payment_client_secret=client_secret,
    )


def parse_invoice(obj: Any) -> ProviderInvoice:
    """Decode a Stripe invoice object."""
    subscription = _get(obj, "subscription") or _get_path(
        obj, "parent", "subscription_details", "subscription"
    )
    return ProviderInvoice(
        invoice_id=str(_get(obj, "id")),
        customer_id=_object_id(_get(obj, "customer")) or "",
        subscription_id=_object_id(subscription),
        billing_reason=_get(obj, "billing_reason"),
        status=_get(obj, "status"),
    )


def parse_customer(obj: Any) -> ProviderCustomer:
    """Decode a Stripe customer object."""
    return ProviderCustomer(
        customer_id=str(_get(obj, "id")),
        email=_get(obj, "email"),
        metadata_user_id=_get(_get(obj, "metadata"), "userId"),
    )


def parse_setup_intent(obj: Any) -> SetupIntentResult:
    """Decode a Stripe setup intent object."""
    return SetupIntentResult(
        setup_intent_id=str(_get(obj, "id")),
        client_secret=_get(obj, "client_secret") or "",
        status=str(_get(obj, "status") or ""),
        customer_id=_object_id(_get(obj, "customer")),
        payment_method_id=_object_id(_get(obj, "payment_method")),
    )


def parse_webhook_event(event: Any) -> WebhookEvent:
    """
    Decode a verified Stripe event into one of the typed webhook variants.

    Raises:
        ValueError: If the event has no id or type
    """
    event_id = _get(event, "id")
    event_type = _get(event, "type")
    if not event_id or not event_type:
        raise ValueError("Stripe event is missing id or type")

    obj = _get_path(event, "data", "object")

    if event_type in SUBSCRIPTION_CHANGED_EVENTS:
        return SubscriptionChanged(event_id, event_type, parse_subscription(obj))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(event_id, event_type, parse_subscription(obj))
    if event_type in INVOICE_SUCCEEDED_EVENTS:
        return InvoicePaymentSucceeded(event_id, event_type, parse_invoice(obj))
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(event_id, event_type, parse_invoice(obj))
    return UnhandledEvent(event_id, event_type)


def _provider_error(action: str, exc: stripe.StripeError) -> PaymentProviderError:
    retryable = isinstance(exc, stripe.APIConnectionError | stripe.RateLimitError)
    return PaymentProviderError(f"{action}: {exc.user_message or exc}", retryable=retryable)


# ============================================================================
# Provider
# ============================================================================


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        webhook_tolerance_seconds: int = 300,
        timeout_seconds: int = 20,
        max_network_retries: int = 2,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            webhook_tolerance_seconds: Maximum accepted age of a signed delivery
            timeout_seconds: HTTP timeout for every Stripe API call
            max_network_retries: SDK retries on connection failures
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    async def find_or_create_customer(self, email: str, user_id: str) -> ProviderCustomer:
        """
        Find a Stripe customer by email, creating one if none exists.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            existing = stripe.Customer.list(email=email, limit=1)
            if existing.data:
                customer = parse_customer(existing.data[0])
                logger.info(
                    "stripe_customer_found", customer_id=customer.customer_id, user_id=user_id
                )
                return customer

            created = stripe.Customer.create(email=email, metadata={"userId": user_id})
            logger.info("stripe_customer_created", customer_id=created.id, user_id=user_id)
            return parse_customer(created)

        except stripe.StripeError as exc:
            logger.error("stripe_customer_lookup_failed", user_id=user_id, error=str(exc))
            raise _provider_error("Customer lookup failed", exc) from exc

    async def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        try:
            return parse_customer(stripe.Customer.retrieve(customer_id))
        except stripe.StripeError as exc:
            logger.error("stripe_customer_retrieve_failed", customer_id=customer_id, error=str(exc))
            raise _provider_error("Customer retrieve failed", exc) from exc

    async def create_setup_intent(
        self, customer_id: str, user_id: str, plan: str, period: str, price_id: str
    ) -> SetupIntentResult:
        """
        Create a SetupIntent so the client can authorize a card off-session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            setup_intent = stripe.SetupIntent.create(
                customer=customer_id,
                payment_method_types=["card"],
                usage="off_session",
                metadata={
                    "userId": user_id,
                    "plan": plan,
                    "period": period,
                    "priceId": price_id,
                },
            )
            logger.info(
                "stripe_setup_intent_created",
                setup_intent_id=setup_intent.id,
                customer_id=customer_id,
                plan=plan,
                period=period,
            )
            return parse_setup_intent(setup_intent)

        except stripe.StripeError as exc:
            logger.error("stripe_setup_intent_failed", customer_id=customer_id, error=str(exc))
            raise _provider_error("Setup intent creation failed", exc) from exc

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntentResult:
        try:
            return parse_setup_intent(stripe.SetupIntent.retrieve(setup_intent_id))
        except stripe.StripeError as exc:
            logger.error(
                "stripe_setup_intent_retrieve_failed",
                setup_intent_id=setup_intent_id,
                error=str(exc),
            )
            raise _provider_error("Setup intent retrieve failed", exc) from exc

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """
        Attach a payment method and make it the customer's invoice default.

        A payment method already attached to the customer is not an error.
        """
        try:
            try:
                stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
            except stripe.InvalidRequestError as exc:
                if exc.code != "resource_already_exists":
                    raise
                logger.debug(
                    "stripe_payment_method_already_attached",
                    payment_method_id=payment_method_id,
                    customer_id=customer_id,
                )

            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
            logger.info(
                "stripe_default_payment_method_set",
                customer_id=customer_id,
                payment_method_id=payment_method_id,
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_method_attach_failed", customer_id=customer_id, error=str(exc)
            )
            raise _provider_error("Payment method setup failed", exc) from exc

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        user_id: str,
        plan: str,
        period: str,
    ) -> ProviderSubscription:
        """
        Create a subscription charged immediately.

        Uses error_if_incomplete so a declined first charge fails the call
        instead of leaving an incomplete subscription behind.

        Raises:
            PaymentProviderError: If Stripe API call fails or the charge is declined
        """
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                default_payment_method=payment_method_id,
                payment_behavior="error_if_incomplete",
                payment_settings={
                    "payment_method_types": ["card"],
                    "save_default_payment_method": "on_subscription",
                },
                expand=["latest_invoice"],
                metadata={"userId": user_id, "plan": plan, "period": period},
            )
            logger.info(
                "stripe_subscription_created",
                subscription_id=subscription.id,
                customer_id=customer_id,
                status=subscription.status,
            )
            return parse_subscription(subscription)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_create_failed",
                customer_id=customer_id,
                price_id=price_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise _provider_error("Subscription creation failed", exc) from exc

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            return parse_subscription(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise _provider_error("Subscription retrieve failed", exc) from exc

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id, cancel_at_period_end=cancel_at_period_end
            )
            logger.info(
                "stripe_subscription_cancel_flag_set",
                subscription_id=subscription_id,
                cancel_at_period_end=cancel_at_period_end,
            )
            return parse_subscription(subscription)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_update_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise _provider_error("Subscription update failed", exc) from exc

    async def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        try:
            return parse_invoice(stripe.Invoice.retrieve(invoice_id))
        except stripe.StripeError as exc:
            logger.error("stripe_invoice_retrieve_failed", invoice_id=invoice_id, error=str(exc))
            raise _provider_error("Invoice retrieve failed", exc) from exc

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        try:
            price = stripe.Price.retrieve(price_id)
            return ProviderPrice(
                price_id=price.id,
                unit_amount=_get(price, "unit_amount"),
                currency=str(_get(price, "currency") or "").lower(),
                recurring_interval=_get_path(price, "recurring", "interval"),
            )
        except stripe.StripeError as exc:
            logger.error("stripe_price_retrieve_failed", price_id=price_id, error=str(exc))
            raise _provider_error("Price retrieve failed", exc) from exc

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id, return_url=return_url
            )
            logger.info("stripe_portal_session_created", customer_id=customer_id)
            url: str = session.url
            return url
        except stripe.StripeError as exc:
            logger.error("stripe_portal_session_failed", customer_id=customer_id, error=str(exc))
            raise _provider_error("Billing portal session failed", exc) from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Typed webhook event

        Raises:
            WebhookVerificationError: If signature verification or decoding fails
        """
        try:
            logger.info("verifying_stripe_webhook", signature_present=bool(signature))

            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.webhook_tolerance_seconds,
            )
            event = parse_webhook_event(json.loads(payload))

            logger.info(
                "stripe_webhook_verified",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return event

        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc
