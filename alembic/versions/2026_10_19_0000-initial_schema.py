"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, balances and processed_webhook_events."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(50), nullable=True),
        sa.Column('subscription_plan', sa.String(50), nullable=True),
        sa.Column('subscription_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.UniqueConstraint('stripe_customer_id', name='uq_users_stripe_customer_id'),
    )
    op.create_index('idx_users_subscription_status', 'users', ['subscription_status'])

    # ========================================================================
    # Create balances table
    # ========================================================================
    op.create_table(
        'balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('balance_type', sa.String(20), nullable=False, server_default='trial'),
        sa.Column('trial_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('subscription_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('subscription_plan', sa.String(20), nullable=True),
        sa.Column('subscription_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_refill_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refill_interval_value', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('refill_interval_unit', sa.String(10), nullable=False, server_default='days'),
        sa.Column('refill_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_refill', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_cycle_day', sa.Integer(), nullable=True),
        sa.Column('is_yearly_subscription', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subscription_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_refill_month', sa.Integer(), nullable=True),
        sa.Column('last_refill_year', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('user_id', name='uq_balances_user_id'),
        sa.CheckConstraint('refill_amount >= 0', name='ck_balance_refill_amount_non_negative'),
        sa.CheckConstraint("balance_type IN ('trial', 'subscription')", name='ck_balance_type_valid'),
        sa.CheckConstraint(
            'billing_cycle_day IS NULL OR billing_cycle_day BETWEEN 1 AND 31',
            name='ck_balance_billing_cycle_day_range',
        ),
        sa.CheckConstraint(
            'last_refill_month IS NULL OR last_refill_month BETWEEN 1 AND 12',
            name='ck_balance_last_refill_month_range',
        ),
    )
    op.create_index(
        'idx_balances_refill_candidates',
        'balances',
        ['billing_cycle_day'],
        postgresql_where=sa.text('is_yearly_subscription AND auto_refill_enabled'),
    )

    # ========================================================================
    # Create processed_webhook_events table
    # ========================================================================
    op.create_table(
        'processed_webhook_events',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('object_id', sa.String(255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_processed_webhook_events_processed_at', 'processed_webhook_events', ['processed_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_processed_webhook_events_processed_at', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_index('idx_balances_refill_candidates', table_name='balances')
    op.drop_table('balances')
    op.drop_index('idx_users_subscription_status', table_name='users')
    op.drop_table('users')
