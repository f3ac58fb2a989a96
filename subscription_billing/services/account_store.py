"""
Account Store - Keyed lookup and partial update of user accounts.

NO DICTIONARIES - Rows are returned as AccountSnapshot dataclasses.
"""

from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subscription_billing.db.models import User
from subscription_billing.exceptions import AccountNotFoundError
from subscription_billing.models.domain import AccountSnapshot, AccountUpdate

logger = get_logger(__name__)


def to_snapshot(user: User) -> AccountSnapshot:
    """Convert a User row to its immutable snapshot."""
    return AccountSnapshot(
        user_id=user.id,
        email=user.email,
        stripe_customer_id=user.stripe_customer_id,
        stripe_subscription_id=user.stripe_subscription_id,
        subscription_status=user.subscription_status,
        subscription_plan=user.subscription_plan,
        subscription_period_end=user.subscription_period_end,
    )


class AccountRepository(Protocol):
    """Account persistence used by the event processor and scheduler."""

    async def get(self, user_id: UUID) -> AccountSnapshot | None: ...

    async def find_by_customer_id(self, customer_id: str) -> AccountSnapshot | None: ...

    async def find_by_email(self, email: str) -> AccountSnapshot | None: ...

    async def update(self, user_id: UUID, changes: AccountUpdate) -> None: ...


class AccountStore:
    """SQL-backed account store."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: UUID) -> AccountSnapshot | None:
        user = await self.session.get(User, user_id)
        return to_snapshot(user) if user else None

    async def find_by_customer_id(self, customer_id: str) -> AccountSnapshot | None:
        if not customer_id:
            return None
        stmt = select(User).where(User.stripe_customer_id == customer_id)
        result = await self.session.execute(stmt)
        user = result.scalar_one_or_none()
        return to_snapshot(user) if user else None

    async def find_by_email(self, email: str) -> AccountSnapshot | None:
        """Case-insensitive email lookup."""
        if not email:
            return None
        stmt = select(User).where(func.lower(User.email) == email.lower())
        result = await self.session.execute(stmt)
        user = result.scalars().first()
        return to_snapshot(user) if user else None

    async def update(self, user_id: UUID, changes: AccountUpdate) -> None:
        """
        Write the non-empty fields of an AccountUpdate.

        Raises:
            AccountNotFoundError: If no row matched
        """
        values = changes.values()
        if not values:
            return

        stmt = update(User).where(User.id == user_id).values(**values)
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise AccountNotFoundError(str(user_id))

        await self.session.commit()
        logger.debug("account_updated", user_id=str(user_id), fields=sorted(values))
