"""
Balance Store - Per-user balance records.

NO DICTIONARIES - Rows are returned as BalanceRecord dataclasses.

Every write is a single statement:
- upserts use INSERT ... ON CONFLICT (user_id) DO UPDATE with absolute values
- the monthly refill is a conditional UPDATE that only matches while the
  stored refill marker is still before the target month
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subscription_billing.db.models import Balance, utc_now
from subscription_billing.models.api import BalanceType, RefillIntervalUnit, SubscriptionPlan
from subscription_billing.models.domain import BalanceRecord, BalanceUpdate

logger = get_logger(__name__)

REFILL_PLANS = (SubscriptionPlan.STANDARD.value, SubscriptionPlan.PLUS.value)


def to_record(balance: Balance) -> BalanceRecord:
    """Convert a Balance row to its immutable record."""
    return BalanceRecord(
        balance_id=balance.id,
        user_id=balance.user_id,
        token_credits=balance.token_credits,
        balance_type=BalanceType(balance.balance_type),
        trial_credits=balance.trial_credits,
        subscription_credits=balance.subscription_credits,
        subscription_plan=balance.subscription_plan,
        subscription_period_start=balance.subscription_period_start,
        subscription_period_end=balance.subscription_period_end,
        auto_refill_enabled=balance.auto_refill_enabled,
        refill_interval_value=balance.refill_interval_value,
        refill_interval_unit=RefillIntervalUnit(balance.refill_interval_unit),
        refill_amount=balance.refill_amount,
        last_refill=balance.last_refill,
        billing_cycle_day=balance.billing_cycle_day,
        is_yearly_subscription=balance.is_yearly_subscription,
        subscription_start_date=balance.subscription_start_date,
        last_refill_month=balance.last_refill_month,
        last_refill_year=balance.last_refill_year,
    )


def refill_marker_before(year: int, month: int) -> ColumnElement[bool]:
    """SQL condition: the stored refill marker is strictly before (year, month)."""
    return or_(
        Balance.last_refill_month.is_(None),
        Balance.last_refill_year.is_(None),
        Balance.last_refill_year < year,
        and_(Balance.last_refill_year == year, Balance.last_refill_month < month),
    )


class BalanceRepository(Protocol):
    """Balance persistence used by the event processor and scheduler."""

    async def get(self, user_id: UUID) -> BalanceRecord | None: ...

    async def upsert(self, user_id: UUID, changes: BalanceUpdate) -> BalanceRecord: ...

    async def disable_auto_refill(self, user_id: UUID) -> None: ...

    async def list_refill_candidates(self, day_of_month: int) -> list[BalanceRecord]: ...

    async def grant_monthly_refill(self, user_id: UUID, amount: int, now: datetime) -> bool: ...


class BalanceStore:
    """SQL-backed balance store."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: UUID) -> BalanceRecord | None:
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        return to_record(balance) if balance else None

    async def upsert(self, user_id: UUID, changes: BalanceUpdate) -> BalanceRecord:
        """
        Create or update the user's balance with absolute values.

        Applying the same BalanceUpdate twice leaves the same record.
        """
        values = changes.values()
        stmt = insert(Balance).values(user_id=user_id, **values)
        if values:
            stmt = stmt.on_conflict_do_update(
                index_elements=[Balance.user_id],
                set_={**values, "updated_at": utc_now()},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[Balance.user_id])

        await self.session.execute(stmt)
        await self.session.commit()

        record = await self.get(user_id)
        if record is None:
            raise RuntimeError(f"Balance upsert for user {user_id} did not persist")

        logger.debug("balance_upserted", user_id=str(user_id), fields=sorted(values))
        return record

    async def disable_auto_refill(self, user_id: UUID) -> None:
        stmt = (
            update(Balance)
            .where(Balance.user_id == user_id, Balance.auto_refill_enabled.is_(True))
            .values(auto_refill_enabled=False)
        )
        await self.session.execute(stmt)
        await self.session.commit()

    async def list_refill_candidates(self, day_of_month: int) -> list[BalanceRecord]:
        """Yearly, auto-refilling balances whose billing day has been reached this month."""
        stmt = (
            select(Balance)
            .where(
                Balance.is_yearly_subscription.is_(True),
                Balance.auto_refill_enabled.is_(True),
                Balance.billing_cycle_day.between(1, day_of_month),
                Balance.subscription_plan.in_(REFILL_PLANS),
            )
            .order_by(Balance.billing_cycle_day, Balance.user_id)
        )
        result = await self.session.execute(stmt)
        return [to_record(balance) for balance in result.scalars().all()]

    async def grant_monthly_refill(self, user_id: UUID, amount: int, now: datetime) -> bool:
        """
        Add one month of credits, at most once per calendar month.

        Returns:
            True if this call granted; False if the month was already granted
            (by an earlier sweep or a concurrent one).
        """
        stmt = (
            update(Balance)
            .where(
                Balance.user_id == user_id,
                Balance.auto_refill_enabled.is_(True),
                refill_marker_before(now.year, now.month),
            )
            .values(
                token_credits=Balance.token_credits + amount,
                subscription_credits=Balance.subscription_credits + amount,
                last_refill=now,
                last_refill_month=now.month,
                last_refill_year=now.year,
            )
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return bool(result.rowcount == 1)
