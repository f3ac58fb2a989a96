"""
Plan Resolver - Map a provider price to a plan tier and billing period.

Resolution order:
1. Exact match against configured price ids (plan, period, currency)
2. Provider price lookup: recurring interval decides the period, unit amount
   against the currency's configured thresholds decides the tier
3. Subscription metadata written at checkout (plan / period)
"""

from structlog import get_logger

from subscription_billing.config import (
    KNOWN_PLANS,
    ConfiguredPrice,
    PlanPriceThreshold,
    Settings,
)
from subscription_billing.models.api import BillingPeriod, SubscriptionPlan
from subscription_billing.models.domain import PlanResolution
from subscription_billing.services.payment_provider import (
    PaymentProvider,
    ProviderPrice,
    ProviderSubscription,
)

logger = get_logger(__name__)


def match_configured_price(
    price_id: str | None, prices: list[ConfiguredPrice]
) -> ConfiguredPrice | None:
    if not price_id:
        return None
    for price in prices:
        if price.price_id == price_id:
            return price
    return None


def classify_price(
    price: ProviderPrice, thresholds: list[PlanPriceThreshold]
) -> tuple[str, bool] | None:
    """
    Classify an unconfigured price by interval and amount.

    Returns:
        (plan, is_yearly), or None if the price is not a monthly/yearly
        recurring price or its currency has no thresholds.
    """
    if price.recurring_interval not in ("month", "year") or price.unit_amount is None:
        return None

    threshold = next((t for t in thresholds if t.currency == price.currency.lower()), None)
    if threshold is None:
        return None

    is_yearly = price.recurring_interval == "year"
    minimum = threshold.plus_yearly_min_minor if is_yearly else threshold.plus_monthly_min_minor
    plan = SubscriptionPlan.PLUS if price.unit_amount >= minimum else SubscriptionPlan.STANDARD
    return plan.value, is_yearly


class PlanResolver:
    """Resolves subscriptions to plans using configuration and the provider."""

    def __init__(self, settings: Settings, provider: PaymentProvider) -> None:
        self.settings = settings
        self.provider = provider

    def _resolution(
        self, plan: str, is_yearly: bool, price_id: str | None, source: str
    ) -> PlanResolution:
        return PlanResolution(
            plan=plan,
            is_yearly=is_yearly,
            token_amount=self.settings.tokens_for_plan(plan),
            price_id=price_id,
            source=source,
        )

    async def resolve_price(self, price_id: str | None) -> PlanResolution | None:
        """Resolve by price id alone (configuration, then provider lookup)."""
        configured = match_configured_price(price_id, self.settings.configured_prices())
        if configured is not None:
            return self._resolution(configured.plan, configured.is_yearly, price_id, "configured")

        if not price_id:
            return None

        price = await self.provider.retrieve_price(price_id)
        classified = classify_price(price, self.settings.price_thresholds())
        if classified is None:
            logger.info(
                "plan_price_unclassified",
                price_id=price_id,
                currency=price.currency,
                interval=price.recurring_interval,
            )
            return None

        plan, is_yearly = classified
        logger.info(
            "plan_resolved_by_price_amount",
            price_id=price_id,
            plan=plan,
            is_yearly=is_yearly,
            unit_amount=price.unit_amount,
            currency=price.currency,
        )
        return self._resolution(plan, is_yearly, price_id, "provider_price")

    async def resolve(self, subscription: ProviderSubscription) -> PlanResolution | None:
        """
        Resolve a subscription's plan.

        Returns:
            The resolution, or None if no rule applies (caller skips the grant)

        Raises:
            PaymentProviderError: If the price lookup fails
        """
        resolution = await self.resolve_price(subscription.price_id)
        if resolution is not None:
            return resolution

        plan = (subscription.metadata_plan or "").lower()
        if plan in KNOWN_PLANS:
            is_yearly = (subscription.metadata_period or "").lower() == BillingPeriod.YEARLY.value
            return self._resolution(plan, is_yearly, subscription.price_id, "metadata")

        logger.warning(
            "plan_unresolved",
            subscription_id=subscription.subscription_id,
            price_id=subscription.price_id,
        )
        return None
