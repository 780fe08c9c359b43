"""
Webhook Reconciler - Applies verified payment events to the ledger exactly once.

NO DICTIONARIES - Events arrive as typed variants (models.events).

Processing runs in two transactions:

1. Find or reserve the ProcessedEvent row (processed=false) and commit, so the
   event is durably "seen" even if its handler later fails.
2. Lock that row FOR UPDATE, re-check ``processed``, run the handler, flip
   ``processed`` and commit. Handler effects and the flag commit together.

Handlers are also idempotent on their own (purchases keyed by payment intent,
billing lines by invoice/intent + status), so a replay that slips past the
outer guard still cannot double-apply. Handler failures roll back, record
``last_error`` and propagate; the gateway's redelivery is the retry mechanism.
"""

import time
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import assert_never

from structlog import get_logger

from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.models import User, utc_now
from marketplace_billing.exceptions import DataIntegrityError
from marketplace_billing.models.api import (
    BillingRecordStatus,
    BillingRecordType,
    LicenseType,
    PricingModel,
)
from marketplace_billing.models.domain import PurchaseSplit
from marketplace_billing.models.events import (
    GatewayEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionChanged,
    TrialWillEnd,
    UnhandledEvent,
)
from marketplace_billing.observability.metrics import metrics
from marketplace_billing.observability.tracing import trace_operation
from marketplace_billing.services.payment_gateway import PaymentGateway

logger = get_logger(__name__)

# A subscription in one of these states may replace the one stored on the user
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})


class ReconcileOutcome(str, Enum):
    """What happened to a delivered event."""

    APPLIED = "applied"  # ledger effects committed
    DUPLICATE = "duplicate"  # already applied earlier
    IGNORED = "ignored"  # acknowledged, nothing to apply


def _from_timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


class WebhookReconciler:
    """Applies one verified gateway event per call."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        *,
        platform_fee_percent: int,
        subscription_license_days: int,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.platform_fee_percent = platform_fee_percent
        self.subscription_license_days = subscription_license_days

    async def apply(self, event: GatewayEvent) -> ReconcileOutcome:
        """
        Apply an event to the ledger at most once.

        Returns:
            APPLIED, DUPLICATE or IGNORED. All three are success for the caller.

        Raises:
            Exception: Any handler failure, after rollback. The event row stays
                processed=false so redelivery resumes it.
        """
        started = time.perf_counter()
        with trace_operation(
            "webhook_reconcile", event_id=event.event_id, event_type=event.event_type
        ) as span:
            seen = await self.ledger.find_event(event.event_id)
            if seen is not None and seen.processed:
                return self._finish(event, ReconcileOutcome.DUPLICATE, started)
            if seen is None:
                await self.ledger.reserve_event(event.event_id, event.event_type)
                await self.ledger.commit()

            try:
                record = await self.ledger.lock_event(event.event_id)
                if record is None:
                    raise DataIntegrityError(f"Reserved event {event.event_id} disappeared")
                if record.processed:
                    # A concurrent delivery finished while we waited for the lock
                    await self.ledger.rollback()
                    return self._finish(event, ReconcileOutcome.DUPLICATE, started)

                outcome = await self._dispatch(event)
                await self.ledger.mark_event_processed(record)
                await self.ledger.commit()
            except Exception as exc:
                await self.ledger.rollback()
                await self._record_failure(event, exc)
                metrics.record_webhook_event(
                    event.event_type, "failed", time.perf_counter() - started
                )
                raise

            span.set_attribute("webhook.outcome", outcome.value)
            return self._finish(event, outcome, started)

    def _finish(
        self, event: GatewayEvent, outcome: ReconcileOutcome, started: float
    ) -> ReconcileOutcome:
        logger.info(
            "webhook_event_reconciled",
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome.value,
        )
        metrics.record_webhook_event(event.event_type, outcome.value, time.perf_counter() - started)
        return outcome

    async def _record_failure(self, event: GatewayEvent, exc: Exception) -> None:
        logger.error(
            "webhook_handler_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        try:
            await self.ledger.record_event_failure(event.event_id, f"{type(exc).__name__}: {exc}")
            await self.ledger.commit()
        except Exception as record_exc:
            # The original error is what the caller must see; this one is only logged
            await self.ledger.rollback()
            logger.error(
                "webhook_failure_not_recorded",
                event_id=event.event_id,
                error=str(record_exc),
            )

    async def _dispatch(self, event: GatewayEvent) -> ReconcileOutcome:
        match event:
            case PaymentSucceeded():
                return await self._apply_payment_succeeded(event)
            case PaymentFailed():
                logger.warning(
                    "payment_failed",
                    payment_intent_id=event.payment_intent_id,
                    failure_message=event.failure_message,
                )
                return ReconcileOutcome.APPLIED
            case SubscriptionChanged():
                return await self._apply_subscription_changed(event)
            case SubscriptionCanceled():
                return await self._apply_subscription_canceled(event)
            case InvoicePaid():
                return await self._apply_invoice_paid(event)
            case InvoicePaymentFailed():
                return await self._apply_invoice_failed(event)
            case TrialWillEnd():
                logger.info(
                    "subscription_trial_ending",
                    subscription_id=event.subscription_id,
                    customer_id=event.customer_id,
                    trial_end=event.trial_end,
                )
                return ReconcileOutcome.APPLIED
            case UnhandledEvent():
                logger.info("webhook_event_unhandled", event_type=event.event_type)
                return ReconcileOutcome.IGNORED
            case _:
                assert_never(event)

    # ========================================================================
    # Purchases
    # ========================================================================

    async def _apply_payment_succeeded(self, event: PaymentSucceeded) -> ReconcileOutcome:
        """Record the purchase, credit the creator and write the buyer's receipt."""
        tool_id, buyer_id, seller_id = event.tool_id, event.buyer_id, event.seller_id
        if tool_id is None or buyer_id is None or seller_id is None:
            logger.error(
                "payment_missing_purchase_metadata",
                payment_intent_id=event.payment_intent_id,
            )
            return ReconcileOutcome.IGNORED

        existing = await self.ledger.find_purchase_by_payment_intent(event.payment_intent_id)
        if existing is not None:
            logger.info(
                "purchase_already_recorded",
                payment_intent_id=event.payment_intent_id,
                purchase_id=str(existing.id),
            )
            return ReconcileOutcome.DUPLICATE

        pricing = await self.ledger.find_pricing(tool_id)
        if pricing is None:
            logger.error(
                "payment_for_unpriced_tool",
                payment_intent_id=event.payment_intent_id,
                tool_id=str(tool_id),
            )
            return ReconcileOutcome.IGNORED

        split = PurchaseSplit.from_amount(event.amount, self.platform_fee_percent)
        expires_at = None
        if pricing.pricing_model == PricingModel.SUBSCRIPTION.value:
            expires_at = utc_now() + timedelta(days=self.subscription_license_days)
        license_type = (
            event.license_type
            if event.license_type in {lt.value for lt in LicenseType}
            else pricing.license_type
        )

        charge = await self.gateway.retrieve_charge_details(event.payment_intent_id)

        purchase = await self.ledger.add_purchase(
            buyer_id=buyer_id,
            seller_id=seller_id,
            tool_id=tool_id,
            split=split,
            currency=event.currency,
            license_type=license_type,
            payment_intent_id=event.payment_intent_id,
            expires_at=expires_at,
        )

        earnings = await self.ledger.lock_or_create_earnings(seller_id)
        await self.ledger.credit_earnings(earnings, split.creator_earnings)

        receipt = await self.ledger.find_billing_record(
            status=BillingRecordStatus.PAID, payment_intent_id=event.payment_intent_id
        )
        if receipt is None:
            await self.ledger.add_billing_record(
                user_id=buyer_id,
                record_type=BillingRecordType.CHARGE,
                status=BillingRecordStatus.PAID,
                amount=split.amount,
                currency=event.currency,
                description=f"Purchase: {event.tool_name or 'Tool'}",
                stripe_charge_id=charge.charge_id,
                stripe_payment_intent_id=event.payment_intent_id,
                receipt_url=charge.receipt_url,
                details={
                    "toolId": str(tool_id),
                    "sellerId": str(seller_id),
                    "licenseType": license_type,
                    "purchaseId": str(purchase.id),
                },
            )

        metrics.record_purchase(split.amount, split.platform_fee)
        logger.info(
            "purchase_recorded",
            purchase_id=str(purchase.id),
            tool_id=str(tool_id),
            buyer_id=str(buyer_id),
            seller_id=str(seller_id),
            amount_minor=split.amount,
            platform_fee_minor=split.platform_fee,
            creator_earnings_minor=split.creator_earnings,
        )
        return ReconcileOutcome.APPLIED

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def _refresh_subscription(self, user: User, subscription_id: str) -> str:
        """
        Re-fetch the subscription and store its latest state.

        Events for one subscription can arrive in any order; the gateway's
        current view wins over whatever the event payload said.
        """
        latest = await self.gateway.retrieve_subscription(subscription_id)
        current_id = user.stripe_subscription_id
        if (
            current_id not in (None, latest.subscription_id)
            and latest.status not in LIVE_SUBSCRIPTION_STATUSES
        ):
            # Late event for a subscription the user has moved away from
            logger.info(
                "stale_subscription_update",
                user_id=str(user.id),
                subscription_id=latest.subscription_id,
                status=latest.status,
                current_subscription_id=current_id,
            )
            return latest.status

        period_end = _from_timestamp(latest.current_period_end)
        await self.ledger.update_user_subscription(
            user,
            subscription_id=latest.subscription_id,
            status=latest.status,
            current_period_end=period_end,
        )
        await self.ledger.save_subscription(
            user_id=user.id,
            subscription_id=latest.subscription_id,
            status=latest.status,
            current_period_start=_from_timestamp(latest.current_period_start),
            current_period_end=period_end,
            cancel_at_period_end=latest.cancel_at_period_end,
        )
        return latest.status

    async def _apply_subscription_changed(self, event: SubscriptionChanged) -> ReconcileOutcome:
        user = await self.ledger.find_user_by_customer(event.customer_id)
        if user is None:
            logger.warning(
                "subscription_customer_unknown",
                customer_id=event.customer_id,
                subscription_id=event.subscription_id,
            )
            return ReconcileOutcome.IGNORED

        status = await self._refresh_subscription(user, event.subscription_id)
        logger.info(
            "subscription_synced",
            user_id=str(user.id),
            subscription_id=event.subscription_id,
            event_status=event.status,
            status=status,
        )
        return ReconcileOutcome.APPLIED

    async def _apply_subscription_canceled(self, event: SubscriptionCanceled) -> ReconcileOutcome:
        await self.ledger.cancel_subscription(event.subscription_id)

        user = await self.ledger.find_user_by_customer(event.customer_id)
        if user is None:
            logger.warning("subscription_customer_unknown", customer_id=event.customer_id)
            return ReconcileOutcome.APPLIED

        if user.stripe_subscription_id not in (None, event.subscription_id):
            # The user has since moved to another subscription; leave it alone
            logger.info(
                "stale_subscription_cancellation",
                user_id=str(user.id),
                subscription_id=event.subscription_id,
                current_subscription_id=user.stripe_subscription_id,
            )
            return ReconcileOutcome.APPLIED

        await self.ledger.update_user_subscription(
            user, subscription_id=None, status="canceled", current_period_end=None
        )
        logger.info("subscription_canceled", user_id=str(user.id))
        return ReconcileOutcome.APPLIED

    # ========================================================================
    # Invoices
    # ========================================================================

    async def _apply_invoice_paid(self, event: InvoicePaid) -> ReconcileOutcome:
        user = (
            await self.ledger.find_user_by_customer(event.customer_id)
            if event.customer_id
            else None
        )
        if user is None:
            logger.warning(
                "invoice_customer_unknown",
                invoice_id=event.invoice_id,
                customer_id=event.customer_id,
            )
            return ReconcileOutcome.IGNORED

        if event.subscription_id:
            await self._refresh_subscription(user, event.subscription_id)

        existing = await self.ledger.find_billing_record(
            status=BillingRecordStatus.PAID, invoice_id=event.invoice_id
        )
        if existing is None:
            await self.ledger.add_billing_record(
                user_id=user.id,
                record_type=BillingRecordType.INVOICE,
                status=BillingRecordStatus.PAID,
                amount=event.amount,
                currency=event.currency,
                description=event.description or "Subscription payment",
                stripe_invoice_id=event.invoice_id,
                receipt_url=event.hosted_invoice_url,
                details={
                    "invoiceNumber": event.number,
                    "periodStart": event.period_start,
                    "periodEnd": event.period_end,
                    "hostedInvoiceUrl": event.hosted_invoice_url,
                    "invoicePdf": event.invoice_pdf,
                },
            )
        logger.info("invoice_paid_recorded", user_id=str(user.id), invoice_id=event.invoice_id)
        return ReconcileOutcome.APPLIED

    async def _apply_invoice_failed(self, event: InvoicePaymentFailed) -> ReconcileOutcome:
        user = (
            await self.ledger.find_user_by_customer(event.customer_id)
            if event.customer_id
            else None
        )
        if user is None:
            logger.warning(
                "invoice_customer_unknown",
                invoice_id=event.invoice_id,
                customer_id=event.customer_id,
            )
            return ReconcileOutcome.IGNORED

        if event.subscription_id:
            await self._refresh_subscription(user, event.subscription_id)

        existing = await self.ledger.find_billing_record(
            status=BillingRecordStatus.FAILED, invoice_id=event.invoice_id
        )
        if existing is None:
            await self.ledger.add_billing_record(
                user_id=user.id,
                record_type=BillingRecordType.INVOICE,
                status=BillingRecordStatus.FAILED,
                amount=event.amount,
                currency=event.currency,
                description=event.description or "Subscription payment failed",
                stripe_invoice_id=event.invoice_id,
                details={
                    "invoiceNumber": event.number,
                    "attemptCount": event.attempt_count,
                },
            )
        logger.warning(
            "invoice_payment_failed",
            user_id=str(user.id),
            invoice_id=event.invoice_id,
            attempt_count=event.attempt_count,
        )
        return ReconcileOutcome.APPLIED
