"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
All money columns are BIGINT minor units (cents); nothing is stored as float.
"""

from datetime import UTC, datetime
from typing import Any
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
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
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

    Only the columns billing reads or writes; profile data lives elsewhere.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Stripe customer + platform subscription
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("stripe_customer_id", name="uq_users_stripe_customer_id"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Subscription(Base):
    """ORM model for platform subscriptions (one per user)."""

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(50), nullable=False, default="pro")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
        UniqueConstraint("stripe_subscription_id", name="uq_subscriptions_stripe_id"),
    )


class Tool(Base):
    """ORM model for tools (owned by the tool builder, read here for ownership)."""

    __tablename__ = "tools"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_tools_created_by", "created_by"),)


class ToolPricing(Base):
    """ORM model for tool_pricing table. One row per tool."""

    __tablename__ = "tool_pricing"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tool_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False
    )
    pricing_model: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    license_type: Mapped[str] = mapped_column(String(20), nullable=False, default="personal")
    stripe_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("tool_id", name="uq_tool_pricing_tool_id"),
        CheckConstraint(
            "pricing_model IN ('free', 'one_time', 'subscription')",
            name="ck_tool_pricing_model",
        ),
        CheckConstraint(
            "license_type IN ('personal', 'commercial')", name="ck_tool_pricing_license"
        ),
        CheckConstraint(
            "(pricing_model = 'free' AND price = 0) OR (pricing_model <> 'free' AND price > 0)",
            name="ck_tool_pricing_price_matches_model",
        ),
    )


class Purchase(Base):
    """
    ORM model for purchases table.

    Append-only record of a buyer acquiring a paid tool. Keyed by the payment
    intent id so replaying the same payment can never create a second row.
    """

    __tablename__ = "purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    buyer_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    seller_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    tool_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("tools.id"), nullable=False
    )

    # Split (minor units)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    license_type: Mapped[str] = mapped_column(String(20), nullable=False, default="personal")
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_purchases_amount_non_negative"),
        CheckConstraint("platform_fee >= 0", name="ck_purchases_fee_non_negative"),
        CheckConstraint("creator_earnings >= 0", name="ck_purchases_earnings_non_negative"),
        CheckConstraint(
            "platform_fee + creator_earnings = amount", name="ck_purchases_split_balances"
        ),
        UniqueConstraint("stripe_payment_intent_id", name="uq_purchases_payment_intent"),
        Index("idx_purchases_buyer_tool", "buyer_id", "tool_id"),
        Index("idx_purchases_seller_created", "seller_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, tool_id={self.tool_id}, amount={self.amount}, "
            f"platform_fee={self.platform_fee}, creator_earnings={self.creator_earnings})>"
        )


class CreatorEarnings(Base):
    """
    ORM model for creator_earnings table.

    Per-seller running balance. The single mutable shared row of the ledger:
    every mutation happens under SELECT ... FOR UPDATE.
    """

    __tablename__ = "creator_earnings"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    total_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_payout_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_creator_earnings_user_id"),
        CheckConstraint("total_earnings >= 0", name="ck_creator_earnings_total_non_negative"),
        CheckConstraint("pending_earnings >= 0", name="ck_creator_earnings_pending_non_negative"),
        CheckConstraint(
            "pending_earnings <= total_earnings", name="ck_creator_earnings_pending_le_total"
        ),
        CheckConstraint("lifetime_sales >= 0", name="ck_creator_earnings_sales_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreatorEarnings(user_id={self.user_id}, total={self.total_earnings}, "
            f"pending={self.pending_earnings})>"
        )


class Payout(Base):
    """
    ORM model for payouts table.

    Status moves pending -> completed or pending -> failed, exactly once.
    """

    __tablename__ = "payouts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payouts_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')", name="ck_payouts_status"
        ),
        CheckConstraint(
            "status <> 'completed' OR stripe_transfer_id IS NOT NULL",
            name="ck_payouts_completed_has_transfer",
        ),
        Index(
            "uq_payouts_stripe_transfer_id",
            "stripe_transfer_id",
            unique=True,
            postgresql_where=(stripe_transfer_id.isnot(None)),
        ),
        Index("idx_payouts_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Payout(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"


class ProcessedEvent(Base):
    """
    ORM model for processed_events table.

    Idempotency record for inbound webhook events. Created processed=false on
    first sight; flipped to true in the same transaction as the event's effects.
    """

    __tablename__ = "processed_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_processed_events_external_id"),
        Index(
            "idx_processed_events_unprocessed",
            "created_at",
            postgresql_where=(processed.is_(False)),
        ),
    )


class BillingRecord(Base):
    """
    ORM model for billing_records table.

    User-facing receipt/invoice lines. Unique per (provider object, status) so
    a redelivered event cannot duplicate a line.
    """

    __tablename__ = "billing_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    record_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "record_type IN ('invoice', 'charge', 'refund')", name="ck_billing_records_type"
        ),
        CheckConstraint(
            "status IN ('paid', 'pending', 'failed', 'refunded')", name="ck_billing_records_status"
        ),
        CheckConstraint("amount >= 0", name="ck_billing_records_amount_non_negative"),
        UniqueConstraint("stripe_invoice_id", "status", name="uq_billing_records_invoice_status"),
        UniqueConstraint(
            "stripe_payment_intent_id", "status", name="uq_billing_records_payment_intent_status"
        ),
        Index("idx_billing_records_user_created", "user_id", "created_at"),
    )
