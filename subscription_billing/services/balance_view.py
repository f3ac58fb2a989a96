"""
Balance View - Read model of a user's balance for clients.
"""

from subscription_billing.models.api import BalanceResponse, BalanceType, SubscriptionStatus
from subscription_billing.models.domain import AccountSnapshot, BalanceRecord


def has_active_subscription(balance: BalanceRecord, account: AccountSnapshot | None) -> bool:
    """
    Whether the user is a paying subscriber.

    Any of: a subscription balance with a plan, an active account with a plan,
    or auto-refill configured with a positive amount.
    """
    if balance.balance_type == BalanceType.SUBSCRIPTION and balance.subscription_plan:
        return True
    if (
        account is not None
        and account.subscription_status == SubscriptionStatus.ACTIVE.value
        and account.subscription_plan
    ):
        return True
    return balance.auto_refill_enabled and balance.refill_amount > 0


def build_balance_view(balance: BalanceRecord, account: AccountSnapshot | None) -> BalanceResponse:
    """Build the client read model. Refill fields are omitted when auto-refill is off."""
    active = has_active_subscription(balance, account)
    is_trial_user = not active
    plan = balance.subscription_plan or (account.subscription_plan if account else None)

    response = BalanceResponse(
        token_credits=balance.token_credits,
        balance_type=balance.balance_type,
        trial_credits=balance.trial_credits,
        subscription_credits=balance.subscription_credits,
        subscription_plan=plan,
        subscription_period_start=balance.subscription_period_start,
        subscription_period_end=balance.subscription_period_end,
        auto_refill_enabled=balance.auto_refill_enabled,
        has_active_subscription=active,
        is_trial_user=is_trial_user,
        is_trial_depleted=is_trial_user and balance.token_credits <= 0,
    )

    if balance.auto_refill_enabled:
        response.refill_interval_value = balance.refill_interval_value
        response.refill_interval_unit = balance.refill_interval_unit
        response.last_refill = balance.last_refill
        response.refill_amount = balance.refill_amount

    return response
