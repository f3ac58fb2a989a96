"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Holds the chat user's identity and the subscription snapshot mirrored
    from the payment provider.
    """

    __tablename__ = "users"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Payment provider linkage
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription snapshot (free-form status mirrors provider states)
    subscription_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_users_subscription_status", "subscription_status"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, stripe_customer_id={self.stripe_customer_id}, "
            f"status={self.subscription_status})>"
        )


class Balance(Base):
    """
    ORM model for balances table.

    One row per user: spendable token credits plus refill configuration.
    """

    __tablename__ = "balances"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # 1000 token credits = $0.001
    token_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_type: Mapped[str] = mapped_column(String(20), nullable=False, default="trial")

    # Analytics counters (not spent directly)
    trial_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    subscription_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Subscription mirror
    subscription_plan: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subscription_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Refill configuration
    auto_refill_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refill_interval_value: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    refill_interval_unit: Mapped[str] = mapped_column(String(10), nullable=False, default="days")
    refill_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_refill: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Yearly subscriptions: monthly refill anchor and idempotency marker
    billing_cycle_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_yearly_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_refill_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_refill_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("refill_amount >= 0", name="ck_balance_refill_amount_non_negative"),
        CheckConstraint(
            "balance_type IN ('trial', 'subscription')", name="ck_balance_type_valid"
        ),
        CheckConstraint(
            "billing_cycle_day IS NULL OR billing_cycle_day BETWEEN 1 AND 31",
            name="ck_balance_billing_cycle_day_range",
        ),
        CheckConstraint(
            "last_refill_month IS NULL OR last_refill_month BETWEEN 1 AND 12",
            name="ck_balance_last_refill_month_range",
        ),
        Index(
            "idx_balances_refill_candidates",
            "billing_cycle_day",
            postgresql_where=text("is_yearly_subscription AND auto_refill_enabled"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Balance(user_id={self.user_id}, token_credits={self.token_credits}, "
            f"plan={self.subscription_plan})>"
        )


class ProcessedWebhookEvent(Base):
    """
    ORM model for processed_webhook_events table.

    Claim ledger for provider events ("event:<id>") and granted invoices
    ("invoice-grant:<id>").
    """

    __tablename__ = "processed_webhook_events"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_processed_webhook_events_processed_at", "processed_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedWebhookEvent(key={self.key}, event_type={self.event_type})>"
