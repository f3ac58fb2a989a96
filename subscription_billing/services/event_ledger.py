"""
Webhook Event Ledger - Claims on provider event ids and granted invoices.

A claim is an INSERT ... ON CONFLICT DO NOTHING; the caller owns the key only
if its insert returned a row. Failed processing releases the claim so the
provider's redelivery is processed again.
"""

from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subscription_billing.db.models import ProcessedWebhookEvent

logger = get_logger(__name__)


def event_key(event_id: str) -> str:
    return f"event:{event_id}"


def invoice_grant_key(invoice_id: str) -> str:
    return f"invoice-grant:{invoice_id}"


class EventLedgerRepository(Protocol):
    async def claim(self, key: str, event_type: str, object_id: str | None = None) -> bool: ...

    async def release(self, key: str) -> None: ...


class EventLedger:
    """SQL-backed claim ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def claim(self, key: str, event_type: str, object_id: str | None = None) -> bool:
        """
        Claim a key.

        Returns:
            True if this call claimed the key, False if it was already claimed
        """
        stmt = (
            insert(ProcessedWebhookEvent)
            .values(key=key, event_type=event_type, object_id=object_id)
            .on_conflict_do_nothing(index_elements=[ProcessedWebhookEvent.key])
            .returning(ProcessedWebhookEvent.key)
        )
        result = await self.session.execute(stmt)
        claimed = result.scalar_one_or_none() is not None
        await self.session.commit()

        if not claimed:
            logger.info("ledger_key_already_claimed", key=key, event_type=event_type)
        return claimed

    async def release(self, key: str) -> None:
        """Delete a claim, discarding any half-applied work in the session first."""
        await self.session.rollback()
        await self.session.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.key == key)
        )
        await self.session.commit()
        logger.info("ledger_key_released", key=key)
