"""
Subscription Service - Operations behind the subscription HTTP endpoints.

NO DICTIONARIES - Requests and responses are typed API models.
"""

from structlog import get_logger

from subscription_billing.config import KNOWN_PERIODS, KNOWN_PLANS, Settings
from subscription_billing.exceptions import (
    AccountNotFoundError,
    InvalidPlanError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from subscription_billing.models.api import (
    CancelSubscriptionResponse,
    CreateSubscriptionResponse,
    MySubscriptionResponse,
    ReactivateSubscriptionResponse,
    SetupIntentResponse,
    SubscriptionStatus,
    SubscriptionStatusResponse,
)
from subscription_billing.models.domain import (
    AccountSnapshot,
    AccountUpdate,
    AuthenticatedUser,
    PlanResolution,
)
from subscription_billing.services.account_store import AccountRepository
from subscription_billing.services.payment_provider import PaymentProvider
from subscription_billing.services.subscription_processor import SubscriptionEventProcessor

logger = get_logger(__name__)


def parse_plan_id(plan_id: str) -> tuple[str, str]:
    """
    Split "<plan>-<period>" (e.g. "standard-monthly").

    Raises:
        InvalidPlanError: If the format, plan or period is unknown
    """
    plan, sep, period = plan_id.strip().lower().partition("-")
    if not sep or not plan or not period:
        raise InvalidPlanError(plan_id, 'expected "plan-period", e.g. "standard-monthly"')
    if plan not in KNOWN_PLANS:
        raise InvalidPlanError(plan_id, f"unknown plan {plan!r}")
    if period not in KNOWN_PERIODS:
        raise InvalidPlanError(plan_id, f"unknown billing period {period!r}")
    return plan, period


class SubscriptionService:
    """Checkout, status, cancellation and portal operations for one caller."""

    def __init__(
        self,
        settings: Settings,
        accounts: AccountRepository,
        provider: PaymentProvider,
        processor: SubscriptionEventProcessor,
    ) -> None:
        self.settings = settings
        self.accounts = accounts
        self.provider = provider
        self.processor = processor

    def _price_for(self, plan_id: str, currency: str | None) -> tuple[str, str, str]:
        plan, period = parse_plan_id(plan_id)
        price_id = self.settings.price_id_for(plan, period, currency)
        if not price_id:
            logger.error(
                "subscription_price_not_configured", plan=plan, period=period, currency=currency
            )
            raise InvalidPlanError(plan_id, "no price configured")
        return plan, period, price_id

    async def _account(self, user: AuthenticatedUser) -> AccountSnapshot:
        account = await self.accounts.get(user.user_id)
        if account is None:
            raise AccountNotFoundError(str(user.user_id))
        return account

    async def create_setup_intent(
        self, user: AuthenticatedUser, plan_id: str, currency: str | None = None
    ) -> SetupIntentResponse:
        """Start checkout: find or create the customer and a card setup intent."""
        plan, period, price_id = self._price_for(plan_id, currency)
        account = await self._account(user)

        email = account.email or user.email
        if not email:
            raise SubscriptionStateError("An email address is required to subscribe")

        customer = await self.provider.find_or_create_customer(email, str(user.user_id))
        setup_intent = await self.provider.create_setup_intent(
            customer.customer_id, str(user.user_id), plan, period, price_id
        )

        logger.info(
            "subscription_checkout_started",
            user_id=str(user.user_id),
            plan=plan,
            period=period,
            setup_intent_id=setup_intent.setup_intent_id,
        )
        return SetupIntentResponse(
            client_secret=setup_intent.client_secret,
            setup_intent_id=setup_intent.setup_intent_id,
        )

    async def create_subscription(
        self,
        user: AuthenticatedUser,
        setup_intent_id: str,
        plan_id: str,
        currency: str | None = None,
    ) -> CreateSubscriptionResponse:
        """
        Subscribe using the card saved by a succeeded setup intent.

        Credits are granted here when the first invoice is already paid; the
        creation webhook then finds the invoice granted and only refreshes
        period fields.
        """
        plan, period, price_id = self._price_for(plan_id, currency)
        await self._account(user)

        setup_intent = await self.provider.retrieve_setup_intent(setup_intent_id)
        if setup_intent.status != "succeeded":
            raise SubscriptionStateError("Setup intent has not succeeded")
        if not setup_intent.payment_method_id:
            raise SubscriptionStateError("Payment method not found")
        if not setup_intent.customer_id:
            raise SubscriptionStateError("Customer not found")

        customer_id = setup_intent.customer_id
        await self.provider.set_default_payment_method(
            customer_id, setup_intent.payment_method_id
        )
        subscription = await self.provider.create_subscription(
            customer_id,
            price_id,
            setup_intent.payment_method_id,
            str(user.user_id),
            plan,
            period,
        )

        await self.accounts.update(
            user.user_id,
            AccountUpdate(
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription.subscription_id,
                subscription_plan=plan,
                subscription_status=subscription.status,
                subscription_period_end=subscription.current_period_end,
            ),
        )

        is_active = subscription.status == SubscriptionStatus.ACTIVE.value
        if is_active and subscription.latest_invoice_id:
            try:
                invoice = await self.provider.retrieve_invoice(subscription.latest_invoice_id)
            except PaymentProviderError as exc:
                # The creation webhook grants instead
                logger.warning(
                    "subscription_invoice_check_failed",
                    user_id=str(user.user_id),
                    invoice_id=subscription.latest_invoice_id,
                    error=str(exc),
                )
            else:
                if invoice.status == "paid" and invoice.billing_reason == "subscription_create":
                    resolution = PlanResolution(
                        plan=plan,
                        is_yearly=period == "yearly",
                        token_amount=self.settings.tokens_for_plan(plan),
                        price_id=price_id,
                        source="configured",
                    )
                    await self.processor.apply_subscription_grant(
                        user.user_id,
                        subscription,
                        resolution,
                        invoice_id=invoice.invoice_id,
                        billing_reason="subscription_create",
                    )

        logger.info(
            "subscription_created",
            user_id=str(user.user_id),
            subscription_id=subscription.subscription_id,
            status=subscription.status,
            plan=plan,
            period=period,
        )
        return CreateSubscriptionResponse(
            subscription_id=subscription.subscription_id,
            client_secret=None if is_active else subscription.payment_client_secret,
            status=subscription.status,
        )

    async def get_subscription_status(
        self, user: AuthenticatedUser, subscription_id: str
    ) -> SubscriptionStatusResponse:
        """Provider status of one of the caller's subscriptions."""
        account = await self._account(user)
        if account.stripe_subscription_id != subscription_id:
            raise SubscriptionNotFoundError(subscription_id)

        subscription = await self.provider.retrieve_subscription(subscription_id)
        return SubscriptionStatusResponse(
            status=subscription.status,
            period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )

    async def get_my_subscription(self, user: AuthenticatedUser) -> MySubscriptionResponse:
        """The caller's live subscription; none if the provider no longer has it."""
        account = await self._account(user)

        if account.stripe_subscription_id:
            try:
                subscription = await self.provider.retrieve_subscription(
                    account.stripe_subscription_id
                )
            except PaymentProviderError as exc:
                logger.warning(
                    "subscription_lookup_failed",
                    user_id=str(user.user_id),
                    subscription_id=account.stripe_subscription_id,
                    error=str(exc),
                )
            else:
                return MySubscriptionResponse(
                    has_subscription=True,
                    plan=account.subscription_plan,
                    status=subscription.status,
                    period_end=subscription.current_period_end,
                    cancel_at_period_end=subscription.cancel_at_period_end,
                )

        return MySubscriptionResponse(has_subscription=False)

    async def cancel_subscription(self, user: AuthenticatedUser) -> CancelSubscriptionResponse:
        """Cancel at period end; credits and auto-refill last until the deletion event."""
        account = await self._account(user)
        if not account.stripe_subscription_id:
            raise SubscriptionStateError("No active subscription found")

        subscription = await self.provider.set_cancel_at_period_end(
            account.stripe_subscription_id, True
        )
        logger.info(
            "subscription_cancel_requested",
            user_id=str(user.user_id),
            subscription_id=subscription.subscription_id,
        )
        return CancelSubscriptionResponse(
            success=True,
            cancel_at_period_end=subscription.cancel_at_period_end,
            period_end=subscription.current_period_end,
        )

    async def reactivate_subscription(
        self, user: AuthenticatedUser
    ) -> ReactivateSubscriptionResponse:
        account = await self._account(user)
        if not account.stripe_subscription_id:
            raise SubscriptionStateError("No subscription found")

        subscription = await self.provider.set_cancel_at_period_end(
            account.stripe_subscription_id, False
        )
        logger.info(
            "subscription_reactivated",
            user_id=str(user.user_id),
            subscription_id=subscription.subscription_id,
        )
        return ReactivateSubscriptionResponse(
            success=True,
            cancel_at_period_end=subscription.cancel_at_period_end,
            status=subscription.status,
        )

    async def create_portal_session(self, user: AuthenticatedUser) -> str:
        account = await self._account(user)
        if not account.stripe_customer_id:
            raise SubscriptionStateError("No Stripe customer found for this account")

        return_url = f"{self.settings.client_domain.rstrip('/')}/c/new"
        return await self.provider.create_portal_session(account.stripe_customer_id, return_url)
