"""
Subscription Event Processor - Applies provider lifecycle events to local state.

NO DICTIONARIES - Consumes typed webhook variants, writes typed updates.

Rules:
- Credits are granted only on a paid invoice whose billing reason is
  subscription creation or a renewal cycle.
- Each provider event id is claimed in the ledger before dispatch; a repeat
  delivery is a no-op. Each invoice id is claimed before its grant, so the
  synchronous grant at checkout and the later webhook never both grant.
- A handler failure releases the event claim and propagates, so the webhook
  route answers 500 and the provider redelivers.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from structlog import get_logger

from subscription_billing.models.api import (
    BalanceType,
    RefillIntervalUnit,
    SubscriptionStatus,
)
from subscription_billing.models.domain import (
    AccountSnapshot,
    AccountUpdate,
    BalanceUpdate,
    PlanResolution,
    StatusTransition,
)
from subscription_billing.observability.metrics import metrics
from subscription_billing.observability.tracing import trace_operation
from subscription_billing.services.account_store import AccountRepository
from subscription_billing.services.balance_store import BalanceRepository
from subscription_billing.services.event_ledger import (
    EventLedgerRepository,
    event_key,
    invoice_grant_key,
)
from subscription_billing.services.payment_provider import (
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentProvider,
    ProviderInvoice,
    ProviderSubscription,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    WebhookEvent,
)
from subscription_billing.services.plan_resolver import PlanResolver

logger = get_logger(__name__)

GRANTING_BILLING_REASONS = frozenset({"subscription_create", "subscription_cycle"})


class ProcessingOutcome(str, Enum):
    """Result of processing one webhook event."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def transition_status(
    previous_status: str | None, incoming_status: str, cancel_at_period_end: bool
) -> StatusTransition:
    """
    Account status to store for a subscription created/updated event.

    - active + cancel_at_period_end -> synthetic cancel_at_period_end
    - cancel_at_period_end -> active without the flag is a reactivation
    - anything else mirrors the provider's status
    """
    active = SubscriptionStatus.ACTIVE.value
    if incoming_status == active and cancel_at_period_end:
        return StatusTransition(SubscriptionStatus.CANCEL_AT_PERIOD_END.value)
    if (
        previous_status == SubscriptionStatus.CANCEL_AT_PERIOD_END.value
        and incoming_status == active
        and not cancel_at_period_end
    ):
        return StatusTransition(active, reenable_auto_refill=True)
    return StatusTransition(incoming_status)


def should_grant(billing_reason: str | None) -> bool:
    """
    Whether a paid invoice funds a billing period.

    For yearly plans a subscription_cycle invoice is the yearly renewal; the
    months in between are funded by the refill scheduler.
    """
    return billing_reason in GRANTING_BILLING_REASONS


def period_fields(subscription: ProviderSubscription) -> BalanceUpdate:
    """Period and billing-anchor fields, refreshed on every paid invoice."""
    start = subscription.current_period_start
    return BalanceUpdate(
        subscription_period_start=start,
        subscription_period_end=subscription.current_period_end,
        subscription_start_date=start,
        billing_cycle_day=start.day if start else None,
    )


def grant_fields(
    subscription: ProviderSubscription, resolution: PlanResolution, now: datetime
) -> BalanceUpdate:
    """
    Absolute balance values for a funded billing period.

    Yearly plans also record the period-start month as already refilled, so
    the scheduler does not top up the month the invoice just paid for.
    """
    start = subscription.current_period_start
    marks_month = resolution.is_yearly and start is not None
    return BalanceUpdate(
        token_credits=resolution.token_amount,
        subscription_credits=resolution.token_amount,
        balance_type=BalanceType.SUBSCRIPTION,
        subscription_plan=resolution.plan,
        auto_refill_enabled=True,
        refill_interval_value=1,
        refill_interval_unit=RefillIntervalUnit.MONTHS,
        refill_amount=resolution.token_amount,
        last_refill=now,
        is_yearly_subscription=resolution.is_yearly,
        subscription_period_start=start,
        subscription_period_end=subscription.current_period_end,
        subscription_start_date=start,
        billing_cycle_day=start.day if start else None,
        last_refill_month=start.month if marks_month and start else None,
        last_refill_year=start.year if marks_month and start else None,
    )


def _parse_user_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        logger.warning("webhook_metadata_user_id_invalid", value=value)
        return None


class SubscriptionEventProcessor:
    """
    Subscription lifecycle state machine.

    Usage:
        processor = SubscriptionEventProcessor(accounts, balances, ledger, provider, resolver)
        outcome = await processor.process(event)
    """

    def __init__(
        self,
        accounts: AccountRepository,
        balances: BalanceRepository,
        ledger: EventLedgerRepository,
        provider: PaymentProvider,
        resolver: PlanResolver,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.accounts = accounts
        self.balances = balances
        self.ledger = ledger
        self.provider = provider
        self.resolver = resolver
        self.clock = clock

    async def process(self, event: WebhookEvent) -> ProcessingOutcome:
        """
        Process one verified webhook event exactly once.

        Raises:
            Any handler error or cancellation, after releasing the event claim
        """
        key = event_key(event.event_id)
        with trace_operation(
            "webhook_process", event_id=event.event_id, event_type=event.event_type
        ) as span:
            if not await self.ledger.claim(key, event.event_type):
                logger.info(
                    "webhook_event_duplicate",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                span.set_attribute("outcome", ProcessingOutcome.DUPLICATE.value)
                return ProcessingOutcome.DUPLICATE

            try:
                outcome = await self._dispatch(event)
            except BaseException:
                logger.exception(
                    "webhook_event_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                await self.ledger.release(key)
                raise

            span.set_attribute("outcome", outcome.value)
            return outcome

    async def _dispatch(self, event: WebhookEvent) -> ProcessingOutcome:
        if isinstance(event, SubscriptionChanged):
            return await self._on_subscription_changed(event.subscription)
        if isinstance(event, SubscriptionDeleted):
            return await self._on_subscription_deleted(event.subscription)
        if isinstance(event, InvoicePaymentSucceeded):
            return await self._on_invoice_paid(event.invoice)
        if isinstance(event, InvoicePaymentFailed):
            return await self._on_invoice_failed(event.invoice)
        if isinstance(event, UnhandledEvent):
            logger.info("webhook_event_unhandled", event_type=event.event_type)
            return ProcessingOutcome.IGNORED
        raise TypeError(f"Unknown webhook event variant: {type(event).__name__}")

    # ========================================================================
    # Account resolution
    # ========================================================================

    async def resolve_account(
        self, customer_id: str, subscription: ProviderSubscription | None = None
    ) -> AccountSnapshot | None:
        """
        Find the account owning a provider customer.

        Lookup chain: customer id, subscription metadata userId, customer
        metadata userId, customer email. A fallback match links the customer
        id to the account for future lookups.
        """
        account = await self.accounts.find_by_customer_id(customer_id)
        if account is not None:
            return account

        found_by = None
        if subscription is not None:
            user_id = _parse_user_id(subscription.metadata_user_id)
            if user_id is not None:
                account = await self.accounts.get(user_id)
                found_by = "subscription_metadata"

        if account is None and customer_id:
            customer = await self.provider.retrieve_customer(customer_id)
            user_id = _parse_user_id(customer.metadata_user_id)
            if user_id is not None:
                account = await self.accounts.get(user_id)
                found_by = "customer_metadata"
            if account is None and customer.email:
                account = await self.accounts.find_by_email(customer.email)
                found_by = "customer_email"

        if account is None or not customer_id:
            return account

        logger.info(
            "webhook_account_linked",
            user_id=str(account.user_id),
            customer_id=customer_id,
            found_by=found_by,
        )
        await self.accounts.update(account.user_id, AccountUpdate(stripe_customer_id=customer_id))
        return account

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_subscription_changed(
        self, subscription: ProviderSubscription
    ) -> ProcessingOutcome:
        account = await self.resolve_account(subscription.customer_id, subscription)
        if account is None:
            logger.warning(
                "webhook_account_unresolved",
                customer_id=subscription.customer_id,
                subscription_id=subscription.subscription_id,
            )
            return ProcessingOutcome.IGNORED

        transition = transition_status(
            account.subscription_status,
            subscription.status,
            subscription.cancel_at_period_end,
        )
        resolution = await self.resolver.resolve(subscription)

        await self.accounts.update(
            account.user_id,
            AccountUpdate(
                stripe_subscription_id=subscription.subscription_id,
                subscription_status=transition.status,
                subscription_plan=resolution.plan if resolution else None,
                subscription_period_end=subscription.current_period_end,
            ),
        )

        if transition.reenable_auto_refill:
            await self._reenable_auto_refill(account.user_id)

        logger.info(
            "subscription_snapshot_updated",
            user_id=str(account.user_id),
            subscription_id=subscription.subscription_id,
            previous_status=account.subscription_status,
            status=transition.status,
            plan=resolution.plan if resolution else None,
        )
        return ProcessingOutcome.PROCESSED

    async def _reenable_auto_refill(self, user_id: UUID) -> None:
        balance = await self.balances.get(user_id)
        if balance is None or not balance.subscription_plan or balance.refill_amount <= 0:
            logger.info("auto_refill_not_reenabled", user_id=str(user_id))
            return
        await self.balances.upsert(user_id, BalanceUpdate(auto_refill_enabled=True))
        logger.info("auto_refill_reenabled", user_id=str(user_id))

    async def _on_subscription_deleted(
        self, subscription: ProviderSubscription
    ) -> ProcessingOutcome:
        account = await self.accounts.find_by_customer_id(subscription.customer_id)
        if account is None:
            logger.warning(
                "webhook_account_unresolved",
                customer_id=subscription.customer_id,
                subscription_id=subscription.subscription_id,
            )
            return ProcessingOutcome.IGNORED

        await self.accounts.update(
            account.user_id,
            AccountUpdate(
                subscription_status=SubscriptionStatus.CANCELED.value,
                subscription_period_end=subscription.current_period_end,
            ),
        )
        await self.balances.disable_auto_refill(account.user_id)

        logger.info(
            "subscription_canceled",
            user_id=str(account.user_id),
            subscription_id=subscription.subscription_id,
        )
        return ProcessingOutcome.PROCESSED

    async def _on_invoice_paid(self, invoice: ProviderInvoice) -> ProcessingOutcome:
        if not invoice.subscription_id:
            logger.info("invoice_without_subscription_ignored", invoice_id=invoice.invoice_id)
            return ProcessingOutcome.IGNORED

        subscription = await self.provider.retrieve_subscription(invoice.subscription_id)
        account = await self.resolve_account(invoice.customer_id, subscription)
        if account is None:
            logger.warning(
                "webhook_account_unresolved",
                customer_id=invoice.customer_id,
                invoice_id=invoice.invoice_id,
            )
            return ProcessingOutcome.IGNORED

        resolution = await self.resolver.resolve(subscription)
        if resolution is None:
            logger.warning(
                "invoice_plan_unresolved",
                user_id=str(account.user_id),
                invoice_id=invoice.invoice_id,
                price_id=subscription.price_id,
            )

        if resolution is not None and should_grant(invoice.billing_reason):
            await self.apply_subscription_grant(
                account.user_id,
                subscription,
                resolution,
                invoice_id=invoice.invoice_id,
                billing_reason=invoice.billing_reason or "",
            )
        else:
            await self.balances.upsert(account.user_id, period_fields(subscription))
            await self._mark_active(account.user_id, subscription, resolution)
            logger.info(
                "invoice_paid_no_grant",
                user_id=str(account.user_id),
                invoice_id=invoice.invoice_id,
                billing_reason=invoice.billing_reason,
            )

        return ProcessingOutcome.PROCESSED

    async def apply_subscription_grant(
        self,
        user_id: UUID,
        subscription: ProviderSubscription,
        resolution: PlanResolution,
        invoice_id: str | None = None,
        billing_reason: str = "subscription_create",
    ) -> bool:
        """
        Fund the current billing period of a paid subscription.

        Claims the invoice first when its id is known; a second grant for the
        same invoice only refreshes period fields.

        Returns:
            True if credits were granted by this call
        """
        grant_key = invoice_grant_key(invoice_id) if invoice_id else None
        granted = True
        if grant_key is not None:
            granted = await self.ledger.claim(grant_key, "invoice_grant", invoice_id)

        try:
            if granted:
                await self.balances.upsert(
                    user_id, grant_fields(subscription, resolution, self.clock())
                )
            else:
                await self.balances.upsert(user_id, period_fields(subscription))
            await self._mark_active(user_id, subscription, resolution)
        except BaseException:
            if granted and grant_key is not None:
                await self.ledger.release(grant_key)
            raise

        if granted:
            metrics.record_grant(resolution.plan, billing_reason)
            logger.info(
                "subscription_credits_granted",
                user_id=str(user_id),
                subscription_id=subscription.subscription_id,
                invoice_id=invoice_id,
                plan=resolution.plan,
                is_yearly=resolution.is_yearly,
                token_amount=resolution.token_amount,
                billing_reason=billing_reason,
            )
        else:
            logger.info(
                "invoice_already_granted",
                user_id=str(user_id),
                invoice_id=invoice_id,
            )
        return granted

    async def _mark_active(
        self,
        user_id: UUID,
        subscription: ProviderSubscription,
        resolution: PlanResolution | None,
    ) -> None:
        status = (
            SubscriptionStatus.CANCEL_AT_PERIOD_END
            if subscription.cancel_at_period_end
            else SubscriptionStatus.ACTIVE
        )
        await self.accounts.update(
            user_id,
            AccountUpdate(
                stripe_subscription_id=subscription.subscription_id,
                subscription_status=status.value,
                subscription_plan=resolution.plan if resolution else None,
                subscription_period_end=subscription.current_period_end,
            ),
        )

    async def _on_invoice_failed(self, invoice: ProviderInvoice) -> ProcessingOutcome:
        if not invoice.subscription_id:
            logger.info("invoice_without_subscription_ignored", invoice_id=invoice.invoice_id)
            return ProcessingOutcome.IGNORED

        account = await self.accounts.find_by_customer_id(invoice.customer_id)
        if account is None:
            logger.warning(
                "webhook_account_unresolved",
                customer_id=invoice.customer_id,
                invoice_id=invoice.invoice_id,
            )
            return ProcessingOutcome.IGNORED

        await self.accounts.update(
            account.user_id,
            AccountUpdate(subscription_status=SubscriptionStatus.PAST_DUE.value),
        )
        logger.warning(
            "subscription_payment_failed",
            user_id=str(account.user_id),
            invoice_id=invoice.invoice_id,
            subscription_id=invoice.subscription_id,
        )
        return ProcessingOutcome.PROCESSED
