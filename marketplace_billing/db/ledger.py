"""
Ledger Store - Queries and writes over the billing tables.

The webhook reconciler and payout issuer never touch the session directly;
every read, row lock and mutation they need goes through LedgerStore, and
transaction boundaries are explicit (``commit`` / ``rollback``).

Balance mutations verify the earnings invariants after flushing, the same
write-then-verify discipline the database CHECK constraints enforce.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_billing.db.models import (
    BillingRecord,
    CreatorEarnings,
    Payout,
    ProcessedEvent,
    Purchase,
    Subscription,
    Tool,
    ToolPricing,
    User,
    utc_now,
)
from marketplace_billing.exceptions import DataIntegrityError
from marketplace_billing.models.api import (
    BillingRecordStatus,
    BillingRecordType,
    PayoutStatus,
)
from marketplace_billing.models.domain import PurchaseSplit


class LedgerStore:
    """Durable ledger operations bound to one AsyncSession (one transaction at a time)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Transaction control
    # ========================================================================

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ========================================================================
    # Processed events
    # ========================================================================

    async def find_event(self, external_event_id: str) -> ProcessedEvent | None:
        stmt = select(ProcessedEvent).where(ProcessedEvent.external_event_id == external_event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def reserve_event(self, external_event_id: str, event_type: str) -> None:
        """
        Insert an unprocessed event row unless one already exists.

        Two concurrent deliveries of the same event both succeed here; the
        unique constraint makes the second insert a no-op.
        """
        stmt = (
            pg_insert(ProcessedEvent)
            .values(external_event_id=external_event_id, event_type=event_type, processed=False)
            .on_conflict_do_nothing(index_elements=[ProcessedEvent.external_event_id])
        )
        await self.session.execute(stmt)

    async def lock_event(self, external_event_id: str) -> ProcessedEvent | None:
        """SELECT ... FOR UPDATE on the event row; serializes concurrent redeliveries."""
        stmt = (
            select(ProcessedEvent)
            .where(ProcessedEvent.external_event_id == external_event_id)
            .with_for_update()
            # find_event may already have loaded a stale copy into the identity map
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_event_processed(self, event: ProcessedEvent) -> None:
        event.processed = True
        event.processed_at = utc_now()
        event.last_error = None
        await self.session.flush()

    async def record_event_failure(self, external_event_id: str, error: str) -> None:
        """Store the last handler error on an unprocessed event row."""
        stmt = (
            update(ProcessedEvent)
            .where(ProcessedEvent.external_event_id == external_event_id)
            .where(ProcessedEvent.processed.is_(False))
            .values(last_error=error[:2000])
        )
        await self.session.execute(stmt)

    # ========================================================================
    # Purchases
    # ========================================================================

    async def find_purchase_by_payment_intent(self, payment_intent_id: str) -> Purchase | None:
        stmt = select(Purchase).where(Purchase.stripe_payment_intent_id == payment_intent_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_purchase(
        self, buyer_id: UUID, tool_id: UUID, now: datetime
    ) -> Purchase | None:
        """Newest purchase of the tool by the buyer that has not expired."""
        stmt = (
            select(Purchase)
            .where(Purchase.buyer_id == buyer_id)
            .where(Purchase.tool_id == tool_id)
            .where(or_(Purchase.expires_at.is_(None), Purchase.expires_at > now))
            .order_by(Purchase.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_purchase(
        self,
        *,
        buyer_id: UUID,
        seller_id: UUID,
        tool_id: UUID,
        split: PurchaseSplit,
        currency: str,
        license_type: str,
        payment_intent_id: str,
        expires_at: datetime | None,
    ) -> Purchase:
        purchase = Purchase(
            buyer_id=buyer_id,
            seller_id=seller_id,
            tool_id=tool_id,
            amount=split.amount,
            platform_fee=split.platform_fee,
            creator_earnings=split.creator_earnings,
            currency=currency,
            license_type=license_type,
            stripe_payment_intent_id=payment_intent_id,
            expires_at=expires_at,
        )
        self.session.add(purchase)
        await self.session.flush()
        return purchase

    async def list_purchases_for_buyer(self, buyer_id: UUID) -> list[tuple[Purchase, str | None]]:
        stmt = (
            select(Purchase, Tool.title)
            .outerjoin(Tool, Tool.id == Purchase.tool_id)
            .where(Purchase.buyer_id == buyer_id)
            .order_by(Purchase.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def list_recent_sales(
        self, seller_id: UUID, limit: int = 10
    ) -> list[tuple[Purchase, str | None]]:
        stmt = (
            select(Purchase, Tool.title)
            .outerjoin(Tool, Tool.id == Purchase.tool_id)
            .where(Purchase.seller_id == seller_id)
            .order_by(Purchase.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    # ========================================================================
    # Creator earnings
    # ========================================================================

    async def find_earnings(self, user_id: UUID) -> CreatorEarnings | None:
        """Unlocked read, for pre-checks and display only."""
        stmt = select(CreatorEarnings).where(CreatorEarnings.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_earnings(self, user_id: UUID) -> CreatorEarnings | None:
        """SELECT ... FOR UPDATE on the creator's balance row."""
        stmt = (
            select(CreatorEarnings)
            .where(CreatorEarnings.user_id == user_id)
            .with_for_update()
            # Re-read even if the row is already in the identity map
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_or_create_earnings(self, user_id: UUID) -> CreatorEarnings:
        """Create the balance row on first use, then lock it."""
        stmt = (
            pg_insert(CreatorEarnings)
            .values(user_id=user_id, total_earnings=0, pending_earnings=0, lifetime_sales=0)
            .on_conflict_do_nothing(index_elements=[CreatorEarnings.user_id])
        )
        await self.session.execute(stmt)
        earnings = await self.lock_earnings(user_id)
        if earnings is None:
            raise DataIntegrityError(f"Earnings row for {user_id} missing after upsert")
        return earnings

    async def credit_earnings(self, earnings: CreatorEarnings, amount: int) -> None:
        """Add a sale's creator share to both lifetime and withdrawable balances."""
        earnings.total_earnings += amount
        earnings.pending_earnings += amount
        earnings.lifetime_sales += 1
        await self.session.flush()
        self._verify_balance(earnings)

    async def debit_earnings(self, earnings: CreatorEarnings, amount: int, paid_at: datetime) -> None:
        """Remove a completed payout from the withdrawable balance."""
        earnings.pending_earnings -= amount
        earnings.last_payout_at = paid_at
        await self.session.flush()
        self._verify_balance(earnings)

    async def set_stripe_account(self, earnings: CreatorEarnings, account_id: str) -> None:
        earnings.stripe_account_id = account_id
        await self.session.flush()

    @staticmethod
    def _verify_balance(earnings: CreatorEarnings) -> None:
        if earnings.pending_earnings < 0:
            raise DataIntegrityError(
                f"Pending earnings negative for {earnings.user_id}: {earnings.pending_earnings}"
            )
        if earnings.pending_earnings > earnings.total_earnings:
            raise DataIntegrityError(
                f"Pending earnings {earnings.pending_earnings} exceed total "
                f"{earnings.total_earnings} for {earnings.user_id}"
            )

    # ========================================================================
    # Payouts
    # ========================================================================

    async def add_payout(
        self, *, user_id: UUID, amount: int, currency: str, stripe_account_id: str
    ) -> Payout:
        """Insert a pending payout and flush so its id exists for the idempotency key."""
        payout = Payout(
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=PayoutStatus.PENDING.value,
            stripe_account_id=stripe_account_id,
            created_at=utc_now(),
        )
        self.session.add(payout)
        await self.session.flush()
        return payout

    async def complete_payout(self, payout: Payout, transfer_id: str, completed_at: datetime) -> None:
        self._ensure_pending(payout)
        payout.status = PayoutStatus.COMPLETED.value
        payout.stripe_transfer_id = transfer_id
        payout.completed_at = completed_at
        await self.session.flush()

    async def fail_payout(self, payout: Payout, reason: str) -> None:
        self._ensure_pending(payout)
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = reason
        await self.session.flush()

    @staticmethod
    def _ensure_pending(payout: Payout) -> None:
        if payout.status != PayoutStatus.PENDING.value:
            raise DataIntegrityError(f"Payout {payout.id} already finalized as {payout.status}")

    async def list_payouts(self, user_id: UUID, limit: int, offset: int) -> list[Payout]:
        stmt = (
            select(Payout)
            .where(Payout.user_id == user_id)
            .order_by(Payout.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Billing records
    # ========================================================================

    async def find_billing_record(
        self,
        *,
        status: BillingRecordStatus,
        invoice_id: str | None = None,
        payment_intent_id: str | None = None,
    ) -> BillingRecord | None:
        stmt = select(BillingRecord).where(BillingRecord.status == status.value)
        if invoice_id is not None:
            stmt = stmt.where(BillingRecord.stripe_invoice_id == invoice_id)
        elif payment_intent_id is not None:
            stmt = stmt.where(BillingRecord.stripe_payment_intent_id == payment_intent_id)
        else:
            raise ValueError("invoice_id or payment_intent_id is required")
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_billing_record(
        self,
        *,
        user_id: UUID,
        record_type: BillingRecordType,
        status: BillingRecordStatus,
        amount: int,
        currency: str,
        description: str | None,
        stripe_invoice_id: str | None = None,
        stripe_charge_id: str | None = None,
        stripe_payment_intent_id: str | None = None,
        receipt_url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> BillingRecord:
        record = BillingRecord(
            user_id=user_id,
            record_type=record_type.value,
            status=status.value,
            amount=amount,
            currency=currency,
            description=description,
            stripe_invoice_id=stripe_invoice_id,
            stripe_charge_id=stripe_charge_id,
            stripe_payment_intent_id=stripe_payment_intent_id,
            receipt_url=receipt_url,
            details=details or {},
        )
        self.session.add(record)
        await self.session.flush()
        return record

    # ========================================================================
    # Users & subscriptions
    # ========================================================================

    async def find_user_by_customer(self, customer_id: str) -> User | None:
        stmt = select(User).where(User.stripe_customer_id == customer_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_user_subscription(
        self,
        user: User,
        *,
        subscription_id: str | None,
        status: str,
        current_period_end: datetime | None,
    ) -> None:
        if subscription_id is not None:
            user.stripe_subscription_id = subscription_id
        user.subscription_status = status
        if current_period_end is not None:
            user.subscription_current_period_end = current_period_end
        await self.session.flush()

    async def save_subscription(
        self,
        *,
        user_id: UUID,
        subscription_id: str,
        status: str,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        cancel_at_period_end: bool,
    ) -> Subscription:
        """Create or update the user's single subscription row."""
        stmt = select(Subscription).where(Subscription.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        subscription = result.scalar_one_or_none()
        if subscription is None:
            subscription = Subscription(user_id=user_id, stripe_subscription_id=subscription_id)
            self.session.add(subscription)
        subscription.stripe_subscription_id = subscription_id
        subscription.status = status
        subscription.current_period_start = current_period_start
        subscription.current_period_end = current_period_end
        subscription.cancel_at_period_end = cancel_at_period_end
        await self.session.flush()
        return subscription

    async def cancel_subscription(self, subscription_id: str) -> None:
        stmt = (
            update(Subscription)
            .where(Subscription.stripe_subscription_id == subscription_id)
            .values(status="canceled", updated_at=utc_now())
        )
        await self.session.execute(stmt)

    # ========================================================================
    # Tools & pricing
    # ========================================================================

    async def get_tool(self, tool_id: UUID) -> Tool | None:
        return await self.session.get(Tool, tool_id)

    async def find_pricing(self, tool_id: UUID) -> ToolPricing | None:
        stmt = select(ToolPricing).where(ToolPricing.tool_id == tool_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_pricing(
        self,
        *,
        tool_id: UUID,
        pricing_model: str,
        price: int,
        currency: str,
        license_type: str,
        stripe_product_id: str | None,
        stripe_price_id: str | None,
    ) -> ToolPricing:
        pricing = await self.find_pricing(tool_id)
        if pricing is None:
            pricing = ToolPricing(tool_id=tool_id)
            self.session.add(pricing)
        pricing.pricing_model = pricing_model
        pricing.price = price
        pricing.currency = currency
        pricing.license_type = license_type
        pricing.stripe_product_id = stripe_product_id
        pricing.stripe_price_id = stripe_price_id
        await self.session.flush()
        return pricing
