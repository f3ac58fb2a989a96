"""
Tests for the Refill Scheduler.

Monthly top-ups for yearly subscribers: decision rules, sweep accounting,
compare-and-set idempotency, re-entrancy and per-record isolation.
"""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime

import pytest

from subscription_billing.models.api import BalanceType
from subscription_billing.services.payment_provider import (
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
)
from subscription_billing.services.refill_scheduler import (
    RefillDecision,
    evaluate_refill,
    next_run_at,
)

JAN_15 = datetime(2024, 1, 15, 3, 0, tzinfo=UTC)
FEB_15 = datetime(2024, 2, 15, 2, 0, tzinfo=UTC)
FEB_20 = datetime(2024, 2, 20, 2, 0, tzinfo=UTC)


@pytest.fixture
def yearly_subscriber(account_store, balance_store, make_account, make_balance):
    """Standard yearly subscriber enrolled 2024-01-15, January already funded."""
    account = account_store.add(
        make_account(
            subscription_status="active",
            subscription_plan="standard",
            subscription_period_end=datetime(2025, 1, 15, tzinfo=UTC),
        )
    )
    balance_store.add(
        make_balance(
            user_id=account.user_id,
            token_credits=300_000,
            subscription_credits=300_000,
            balance_type=BalanceType.SUBSCRIPTION,
            subscription_plan="standard",
            auto_refill_enabled=True,
            refill_amount=300_000,
            billing_cycle_day=15,
            is_yearly_subscription=True,
            subscription_start_date=datetime(2024, 1, 15, tzinfo=UTC),
            last_refill_month=1,
            last_refill_year=2024,
        )
    )
    return account


# ============================================================================
# Pure Decision Rules
# ============================================================================


class TestEvaluateRefill:
    """Tests for evaluate_refill."""

    def test_grants_in_a_new_month(self, make_balance, make_account):
        balance = make_balance(
            refill_amount=300_000,
            subscription_start_date=datetime(2024, 1, 15, tzinfo=UTC),
            last_refill_month=1,
            last_refill_year=2024,
        )

        decision = evaluate_refill(balance, make_account(subscription_status="active"), FEB_15)

        assert decision == RefillDecision.GRANT

    def test_already_refilled_this_month(self, make_balance, make_account):
        balance = make_balance(refill_amount=1, last_refill_month=2, last_refill_year=2024)

        decision = evaluate_refill(balance, make_account(subscription_status="active"), FEB_20)

        assert decision == RefillDecision.ALREADY_REFILLED

    def test_same_month_previous_year_is_not_refilled(self, make_balance, make_account):
        balance = make_balance(refill_amount=1, last_refill_month=2, last_refill_year=2023)

        decision = evaluate_refill(balance, make_account(subscription_status="active"), FEB_20)

        assert decision == RefillDecision.GRANT

    def test_missing_account(self, make_balance):
        assert evaluate_refill(make_balance(refill_amount=1), None, FEB_15) == (
            RefillDecision.NO_ACCOUNT
        )

    @pytest.mark.parametrize(
        "status", ["canceled", "past_due", "unpaid", "incomplete_expired", None]
    )
    def test_lapsed_status(self, make_balance, make_account, status):
        decision = evaluate_refill(
            make_balance(refill_amount=1), make_account(subscription_status=status), FEB_15
        )

        assert decision == RefillDecision.ENTITLEMENT_LAPSED

    def test_trialing_is_entitled(self, make_balance, make_account):
        decision = evaluate_refill(
            make_balance(refill_amount=1), make_account(subscription_status="trialing"), FEB_15
        )

        assert decision == RefillDecision.GRANT

    def test_pending_cancellation_is_entitled(self, make_balance, make_account):
        account = make_account(
            subscription_status="cancel_at_period_end",
            subscription_period_end=datetime(2025, 1, 15, tzinfo=UTC),
        )

        decision = evaluate_refill(make_balance(refill_amount=1), account, FEB_15)

        assert decision == RefillDecision.GRANT

    def test_period_end_in_the_past_lapses(self, make_balance, make_account):
        account = make_account(
            subscription_status="active",
            subscription_period_end=datetime(2024, 2, 1, tzinfo=UTC),
        )

        assert evaluate_refill(make_balance(refill_amount=1), account, FEB_15) == (
            RefillDecision.ENTITLEMENT_LAPSED
        )

    def test_start_month_is_never_refilled(self, make_balance, make_account):
        balance = make_balance(
            refill_amount=1, subscription_start_date=datetime(2024, 2, 3, tzinfo=UTC)
        )

        decision = evaluate_refill(balance, make_account(subscription_status="active"), FEB_20)

        assert decision == RefillDecision.START_MONTH

    def test_non_positive_amount_is_misconfigured(self, make_balance, make_account):
        decision = evaluate_refill(
            make_balance(refill_amount=0), make_account(subscription_status="active"), FEB_15
        )

        assert decision == RefillDecision.MISCONFIGURED


class TestNextRunAt:
    """Tests for next_run_at."""

    def test_later_today(self):
        now = datetime(2024, 1, 15, 1, 30, tzinfo=UTC)

        assert next_run_at(now, 2) == datetime(2024, 1, 15, 2, 0, tzinfo=UTC)

    def test_tomorrow_once_passed(self):
        now = datetime(2024, 1, 31, 2, 0, tzinfo=UTC)

        assert next_run_at(now, 2) == datetime(2024, 2, 1, 2, 0, tzinfo=UTC)


# ============================================================================
# Sweeps
# ============================================================================


class TestRefillSweep:
    """Tests for RefillScheduler.run_once."""

    async def test_grants_once_per_month(self, scheduler, balance_store, yearly_subscriber):
        first = await scheduler.run_once(FEB_15)
        second = await scheduler.run_once(FEB_15)

        balance = balance_store.balances[yearly_subscriber.user_id]
        assert (first.granted, second.granted) == (1, 0)
        assert second.skipped == 1
        assert balance.token_credits == 600_000
        assert balance.subscription_credits == 600_000
        assert (balance.last_refill_month, balance.last_refill_year) == (2, 2024)
        assert balance.last_refill == FEB_15

    async def test_no_grant_in_enrollment_month(
        self, scheduler, balance_store, yearly_subscriber
    ):
        """Even without a refill marker, the start month is funded by the invoice."""
        user_id = yearly_subscriber.user_id
        balance_store.balances[user_id] = replace(
            balance_store.balances[user_id], last_refill_month=None, last_refill_year=None
        )

        result = await scheduler.run_once(datetime(2024, 1, 28, tzinfo=UTC))

        assert result.granted == 0
        assert balance_store.balances[yearly_subscriber.user_id].token_credits == 300_000

    async def test_billing_day_not_reached_is_not_a_candidate(
        self, scheduler, yearly_subscriber
    ):
        result = await scheduler.run_once(datetime(2024, 2, 14, tzinfo=UTC))

        assert result.candidates == 0

    async def test_billing_day_31_not_reached_in_february(
        self, scheduler, account_store, balance_store, make_account, make_balance
    ):
        account = account_store.add(make_account(subscription_status="active"))
        balance_store.add(
            make_balance(
                user_id=account.user_id,
                subscription_plan="plus",
                auto_refill_enabled=True,
                refill_amount=750_000,
                billing_cycle_day=31,
                is_yearly_subscription=True,
            )
        )

        february = await scheduler.run_once(datetime(2024, 2, 29, tzinfo=UTC))

        assert february.candidates == 0

    async def test_monotonic_refill_month(self, scheduler, balance_store, yearly_subscriber):
        """A clock moved backwards never regrants or rewinds the marker."""
        await scheduler.run_once(datetime(2024, 3, 20, tzinfo=UTC))

        result = await scheduler.run_once(FEB_20)

        balance = balance_store.balances[yearly_subscriber.user_id]
        assert result.granted == 0
        assert balance.token_credits == 600_000
        assert (balance.last_refill_month, balance.last_refill_year) == (3, 2024)

    async def test_lapsed_entitlement_disables_auto_refill(
        self, scheduler, account_store, balance_store, yearly_subscriber
    ):
        user_id = yearly_subscriber.user_id
        account_store.accounts[user_id] = replace(
            account_store.accounts[user_id], subscription_status="canceled"
        )

        result = await scheduler.run_once(FEB_15)

        balance = balance_store.balances[yearly_subscriber.user_id]
        assert result.disabled == 1
        assert balance.auto_refill_enabled is False
        assert balance.token_credits == 300_000

        # Disabled records are no longer candidates
        assert (await scheduler.run_once(FEB_20)).candidates == 0

    async def test_one_record_failure_does_not_stop_sweep(
        self, scheduler, account_store, balance_store, yearly_subscriber, make_account, make_balance
    ):
        healthy = account_store.add(make_account(subscription_status="active"))
        balance_store.add(
            make_balance(
                user_id=healthy.user_id,
                subscription_plan="plus",
                auto_refill_enabled=True,
                refill_amount=750_000,
                billing_cycle_day=1,
                is_yearly_subscription=True,
            )
        )
        original_get = account_store.get

        async def failing_get(user_id):
            if user_id == yearly_subscriber.user_id:
                raise RuntimeError("connection reset")
            return await original_get(user_id)

        account_store.get = failing_get

        result = await scheduler.run_once(FEB_15)

        assert result.candidates == 2
        assert result.errored == 1
        assert result.granted == 1
        assert balance_store.balances[healthy.user_id].token_credits == 750_000

    async def test_slow_record_times_out(
        self, scheduler, account_store, yearly_subscriber, test_settings
    ):
        test_settings.refill_record_timeout_seconds = 0.01

        async def hanging_get(user_id):
            await asyncio.sleep(5)

        account_store.get = hanging_get

        result = await scheduler.run_once(FEB_15)

        assert result.errored == 1
        assert result.granted == 0

    async def test_concurrent_sweep_is_rejected(
        self, scheduler, account_store, balance_store, yearly_subscriber
    ):
        gate = asyncio.Event()
        original_get = account_store.get

        async def gated_get(user_id):
            await gate.wait()
            return await original_get(user_id)

        account_store.get = gated_get

        first = asyncio.create_task(scheduler.run_once(FEB_15))
        while not scheduler.is_running:
            await asyncio.sleep(0)

        second = await scheduler.run_once(FEB_15)
        gate.set()
        first_result = await first

        assert second.already_running is True
        assert second.granted == 0
        assert first_result.granted == 1
        assert balance_store.balances[yearly_subscriber.user_id].token_credits == 600_000

    async def test_lost_race_counts_as_skipped(
        self, scheduler, balance_store, yearly_subscriber
    ):
        """Another worker granted between the read and the compare-and-set."""
        original_grant = balance_store.grant_monthly_refill

        async def raced_grant(user_id, amount, now):
            await original_grant(user_id, amount, now)
            return await original_grant(user_id, amount, now)

        balance_store.grant_monthly_refill = raced_grant

        result = await scheduler.run_once(FEB_15)

        assert result.granted == 0
        assert result.skipped == 1
        assert balance_store.balances[yearly_subscriber.user_id].token_credits == 600_000

    async def test_manual_trigger_uses_clock(
        self, scheduler, clock, balance_store, yearly_subscriber
    ):
        clock.return_value = FEB_15

        result = await scheduler.trigger_manual_refill()

        assert result.granted == 1

    async def test_start_and_stop(self, scheduler):
        scheduler.start()
        await asyncio.sleep(0)

        await scheduler.stop()

        assert scheduler.is_running is False


# ============================================================================
# End-to-End Scenario
# ============================================================================


class TestYearlySubscriberScenario:
    """Checkout on 2024-01-15, sweeps on 2024-01-15, 2024-02-15 and 2024-02-20."""

    async def test_enrollment_then_monthly_refill(
        self,
        processor,
        scheduler,
        account_store,
        balance_store,
        provider,
        clock,
        make_account,
        make_invoice,
        make_subscription,
    ):
        account = account_store.add(make_account())
        provider.retrieve_subscription.return_value = make_subscription(
            price_id="price_standard_yearly",
            current_period_start=datetime(2024, 1, 15, tzinfo=UTC),
            current_period_end=datetime(2025, 1, 15, tzinfo=UTC),
        )
        clock.return_value = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)

        await processor.process(
            InvoicePaymentSucceeded("evt_1", "invoice.payment_succeeded", make_invoice())
        )
        assert balance_store.balances[account.user_id].token_credits == 300_000

        january = await scheduler.run_once(JAN_15)
        assert january.granted == 0
        assert balance_store.balances[account.user_id].token_credits == 300_000

        february = await scheduler.run_once(FEB_15)
        assert february.granted == 1
        assert balance_store.balances[account.user_id].token_credits == 600_000

        later = await scheduler.run_once(FEB_20)
        assert later.granted == 0
        balance = balance_store.balances[account.user_id]
        assert balance.token_credits == 600_000
        assert (balance.last_refill_month, balance.last_refill_year) == (2, 2024)

    async def test_pending_cancellation_keeps_monthly_refills(
        self,
        processor,
        scheduler,
        account_store,
        balance_store,
        make_subscription,
        yearly_subscriber,
    ):
        user_id = yearly_subscriber.user_id
        canceling = make_subscription(cancel_at_period_end=True)

        await processor.process(
            SubscriptionChanged("evt_cancel", "customer.subscription.updated", canceling)
        )
        assert account_store.accounts[user_id].subscription_status == "cancel_at_period_end"

        february = await scheduler.run_once(FEB_15)

        balance = balance_store.balances[user_id]
        assert february.granted == 1
        assert february.disabled == 0
        assert balance.token_credits == 600_000
        assert balance.auto_refill_enabled is True

        await processor.process(
            SubscriptionDeleted("evt_deleted", "customer.subscription.deleted", canceling)
        )
        march = await scheduler.run_once(datetime(2024, 3, 15, 2, 0, tzinfo=UTC))

        assert march.candidates == 0
        assert balance_store.balances[user_id].token_credits == 600_000
