"""initial schema

Revision ID: 2026_10_16_0000
Revises:
Create Date: 2026-10-16 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_16_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create the marketplace ledger schema."""

    # ========================================================================
    # Users (billing columns only)
    # ========================================================================
    op.create_table(
        'users',
        _id_column(),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(50), nullable=True),
        sa.Column('subscription_current_period_end', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('stripe_customer_id', name='uq_users_stripe_customer_id'),
    )

    op.create_table(
        'subscriptions',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('plan_code', sa.String(50), nullable=False, server_default='pro'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('user_id', name='uq_subscriptions_user_id'),
        sa.UniqueConstraint('stripe_subscription_id', name='uq_subscriptions_stripe_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_subscriptions_user', ondelete='CASCADE'),
    )

    # ========================================================================
    # Tools and pricing
    # ========================================================================
    op.create_table(
        'tools',
        _id_column(),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('created_by', UUID(as_uuid=True), nullable=False),
        _timestamp('created_at'),

        sa.ForeignKeyConstraint(['created_by'], ['users.id'], name='fk_tools_creator'),
    )
    op.create_index('idx_tools_created_by', 'tools', ['created_by'])

    op.create_table(
        'tool_pricing',
        _id_column(),
        sa.Column('tool_id', UUID(as_uuid=True), nullable=False),
        sa.Column('pricing_model', sa.String(20), nullable=False, server_default='free'),
        sa.Column('price', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('license_type', sa.String(20), nullable=False, server_default='personal'),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('tool_id', name='uq_tool_pricing_tool_id'),
        sa.CheckConstraint("pricing_model IN ('free', 'one_time', 'subscription')", name='ck_tool_pricing_model'),
        sa.CheckConstraint("license_type IN ('personal', 'commercial')", name='ck_tool_pricing_license'),
        sa.CheckConstraint(
            "(pricing_model = 'free' AND price = 0) OR (pricing_model <> 'free' AND price > 0)",
            name='ck_tool_pricing_price_matches_model',
        ),
        sa.ForeignKeyConstraint(['tool_id'], ['tools.id'], name='fk_tool_pricing_tool', ondelete='CASCADE'),
    )

    # ========================================================================
    # Purchases (append-only, keyed by payment intent)
    # ========================================================================
    op.create_table(
        'purchases',
        _id_column(),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('seller_id', UUID(as_uuid=True), nullable=False),
        sa.Column('tool_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False),
        sa.Column('creator_earnings', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('license_type', sa.String(20), nullable=False, server_default='personal'),
        sa.Column('stripe_payment_intent_id', sa.String(255), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),

        sa.CheckConstraint('amount >= 0', name='ck_purchases_amount_non_negative'),
        sa.CheckConstraint('platform_fee >= 0', name='ck_purchases_fee_non_negative'),
        sa.CheckConstraint('creator_earnings >= 0', name='ck_purchases_earnings_non_negative'),
        sa.CheckConstraint('platform_fee + creator_earnings = amount', name='ck_purchases_split_balances'),
        sa.UniqueConstraint('stripe_payment_intent_id', name='uq_purchases_payment_intent'),
        sa.ForeignKeyConstraint(['buyer_id'], ['users.id'], name='fk_purchases_buyer'),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id'], name='fk_purchases_seller'),
        sa.ForeignKeyConstraint(['tool_id'], ['tools.id'], name='fk_purchases_tool'),
    )
    op.create_index('idx_purchases_buyer_tool', 'purchases', ['buyer_id', 'tool_id'])
    op.create_index('idx_purchases_seller_created', 'purchases', ['seller_id', 'created_at'])

    # ========================================================================
    # Creator earnings (one balance row per seller)
    # ========================================================================
    op.create_table(
        'creator_earnings',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('total_earnings', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('pending_earnings', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stripe_account_id', sa.String(255), nullable=True),
        sa.Column('last_payout_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('user_id', name='uq_creator_earnings_user_id'),
        sa.CheckConstraint('total_earnings >= 0', name='ck_creator_earnings_total_non_negative'),
        sa.CheckConstraint('pending_earnings >= 0', name='ck_creator_earnings_pending_non_negative'),
        sa.CheckConstraint('pending_earnings <= total_earnings', name='ck_creator_earnings_pending_le_total'),
        sa.CheckConstraint('lifetime_sales >= 0', name='ck_creator_earnings_sales_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_creator_earnings_user'),
    )

    # ========================================================================
    # Payouts
    # ========================================================================
    op.create_table(
        'payouts',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('stripe_transfer_id', sa.String(255), nullable=True),
        sa.Column('stripe_account_id', sa.String(255), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('amount > 0', name='ck_payouts_amount_positive'),
        sa.CheckConstraint("status IN ('pending', 'completed', 'failed')", name='ck_payouts_status'),
        sa.CheckConstraint(
            "status <> 'completed' OR stripe_transfer_id IS NOT NULL",
            name='ck_payouts_completed_has_transfer',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_payouts_user'),
    )
    op.create_index(
        'uq_payouts_stripe_transfer_id', 'payouts', ['stripe_transfer_id'],
        unique=True, postgresql_where=sa.text('stripe_transfer_id IS NOT NULL'),
    )
    op.create_index('idx_payouts_user_created', 'payouts', ['user_id', 'created_at'])

    # ========================================================================
    # Webhook idempotency
    # ========================================================================
    op.create_table(
        'processed_events',
        _id_column(),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        _timestamp('created_at'),

        sa.UniqueConstraint('external_event_id', name='uq_processed_events_external_id'),
    )
    op.create_index(
        'idx_processed_events_unprocessed', 'processed_events', ['created_at'],
        postgresql_where=sa.text('processed = false'),
    )

    # ========================================================================
    # Billing records (receipts and invoices)
    # ========================================================================
    op.create_table(
        'billing_records',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('record_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(255), nullable=True),
        sa.Column('stripe_charge_id', sa.String(255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(255), nullable=True),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        sa.Column('details', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('created_at'),

        sa.CheckConstraint("record_type IN ('invoice', 'charge', 'refund')", name='ck_billing_records_type'),
        sa.CheckConstraint("status IN ('paid', 'pending', 'failed', 'refunded')", name='ck_billing_records_status'),
        sa.CheckConstraint('amount >= 0', name='ck_billing_records_amount_non_negative'),
        sa.UniqueConstraint('stripe_invoice_id', 'status', name='uq_billing_records_invoice_status'),
        sa.UniqueConstraint('stripe_payment_intent_id', 'status', name='uq_billing_records_payment_intent_status'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_billing_records_user'),
    )
    op.create_index('idx_billing_records_user_created', 'billing_records', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('billing_records')
    op.drop_table('processed_events')
    op.drop_table('payouts')
    op.drop_table('creator_earnings')
    op.drop_table('purchases')
    op.drop_table('tool_pricing')
    op.drop_table('tools')
    op.drop_table('subscriptions')
    op.drop_table('users')
