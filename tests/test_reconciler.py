"""
Tests for WebhookReconciler.

Runs the reconciler against the in-memory ledger so idempotency, rollback and
row-lock serialization are exercised end to end.
"""

import asyncio
from datetime import timedelta

import pytest

from marketplace_billing.db.models import utc_now
from marketplace_billing.exceptions import PaymentProviderError
from marketplace_billing.models.api import LicenseType, PricingModel
from marketplace_billing.models.events import parse_event
from marketplace_billing.services.payment_gateway import GatewaySubscription, VerifiedEvent
from marketplace_billing.services.reconciler import ReconcileOutcome, WebhookReconciler


def _reconciler(ledger, gateway) -> WebhookReconciler:
    return WebhookReconciler(
        ledger, gateway, platform_fee_percent=30, subscription_license_days=30
    )


async def _deliver(ledger, gateway, verified: VerifiedEvent) -> ReconcileOutcome:
    return await _reconciler(ledger, gateway).apply(parse_event(verified))


class TestPaymentSucceeded:
    """payment_intent.succeeded → purchase, creator credit and receipt."""

    async def test_purchase_recorded_with_split(
        self, ledger, ledger_state, gateway, paid_tool, buyer, seller, payment_succeeded
    ):
        """A $10.00 sale credits the creator $7.00 and keeps $3.00 as platform fee."""
        outcome = await _deliver(ledger, gateway, payment_succeeded(paid_tool, buyer.id))

        assert outcome == ReconcileOutcome.APPLIED
        assert len(ledger_state.purchases) == 1
        purchase = ledger_state.purchases[0]
        assert purchase.amount == 1000
        assert purchase.platform_fee == 300
        assert purchase.creator_earnings == 700
        assert purchase.buyer_id == buyer.id
        assert purchase.seller_id == seller.id
        assert purchase.expires_at is None

        earnings = ledger_state.earnings[seller.id]
        assert earnings.total_earnings == 700
        assert earnings.pending_earnings == 700
        assert earnings.lifetime_sales == 1

        event = ledger_state.events["evt_123"]
        assert event.processed is True
        assert event.processed_at is not None

    async def test_buyer_receipt_written(
        self, ledger, ledger_state, gateway, paid_tool, buyer, payment_succeeded
    ):
        await _deliver(ledger, gateway, payment_succeeded(paid_tool, buyer.id))

        assert len(ledger_state.billing_records) == 1
        receipt = ledger_state.billing_records[0]
        assert receipt.user_id == buyer.id
        assert receipt.record_type == "charge"
        assert receipt.status == "paid"
        assert receipt.amount == 1000
        assert receipt.stripe_charge_id == "ch_test"
        assert receipt.receipt_url == "https://pay.stripe.com/receipts/test"
        assert receipt.description == "Purchase: Sentiment Analyzer"
        assert receipt.details["purchaseId"] == str(ledger_state.purchases[0].id)

    async def test_redelivered_event_is_duplicate(
        self, ledger, ledger_state, gateway, paid_tool, buyer, seller, payment_succeeded
    ):
        """The same evt_123 delivered twice credits the creator once."""
        event = payment_succeeded(paid_tool, buyer.id)

        first = await _deliver(ledger, gateway, event)
        second = await _deliver(ledger, gateway, event)

        assert first == ReconcileOutcome.APPLIED
        assert second == ReconcileOutcome.DUPLICATE
        assert len(ledger_state.purchases) == 1
        assert ledger_state.earnings[seller.id].pending_earnings == 700
        assert len(ledger_state.billing_records) == 1

    async def test_same_payment_intent_under_new_event_id(
        self, ledger, ledger_state, gateway, paid_tool, buyer, seller, payment_succeeded
    ):
        """The purchase key guards replays that carry a fresh event id."""
        await _deliver(ledger, gateway, payment_succeeded(paid_tool, buyer.id, event_id="evt_a"))
        outcome = await _deliver(
            ledger, gateway, payment_succeeded(paid_tool, buyer.id, event_id="evt_b")
        )

        assert outcome == ReconcileOutcome.DUPLICATE
        assert len(ledger_state.purchases) == 1
        assert ledger_state.earnings[seller.id].pending_earnings == 700
        assert ledger_state.events["evt_b"].processed is True

    async def test_concurrent_deliveries_apply_once(
        self, ledger_factory, ledger_state, gateway, paid_tool, buyer, seller, payment_succeeded
    ):
        """Two simultaneous deliveries serialize on the event row lock."""
        event = payment_succeeded(paid_tool, buyer.id)

        outcomes = await asyncio.gather(
            _deliver(ledger_factory(), gateway, event),
            _deliver(ledger_factory(), gateway, event),
        )

        assert sorted(o.value for o in outcomes) == ["applied", "duplicate"]
        assert len(ledger_state.purchases) == 1
        assert ledger_state.earnings[seller.id].pending_earnings == 700
        assert ledger_state.earnings[seller.id].lifetime_sales == 1

    async def test_handler_failure_rolls_back_and_redelivery_resumes(
        self, ledger, ledger_state, gateway, paid_tool, buyer, seller, payment_succeeded
    ):
        event = payment_succeeded(paid_tool, buyer.id)
        gateway.charge_error = PaymentProviderError("retrieve_payment_intent timed out after 30.0s")

        with pytest.raises(PaymentProviderError):
            await _deliver(ledger, gateway, event)

        record = ledger_state.events["evt_123"]
        assert record.processed is False
        assert "PaymentProviderError" in record.last_error
        assert ledger_state.purchases == []
        assert seller.id not in ledger_state.earnings

        gateway.charge_error = None
        outcome = await _deliver(ledger, gateway, event)

        assert outcome == ReconcileOutcome.APPLIED
        assert record.processed is True
        assert record.last_error is None
        assert ledger_state.earnings[seller.id].pending_earnings == 700

    async def test_missing_metadata_is_ignored(
        self, ledger, ledger_state, gateway, payment_succeeded
    ):
        verified = VerifiedEvent(
            event_id="evt_meta",
            event_type="payment_intent.succeeded",
            data_object={"id": "pi_x", "amount": 1000, "currency": "usd", "metadata": {}},
        )

        outcome = await _deliver(ledger, gateway, verified)

        assert outcome == ReconcileOutcome.IGNORED
        assert ledger_state.purchases == []
        assert ledger_state.events["evt_meta"].processed is True

    async def test_unpriced_tool_is_ignored(
        self, ledger, ledger_state, gateway, seller, buyer, payment_succeeded
    ):
        tool = ledger_state.add_tool(seller.id, pricing_model=None)

        outcome = await _deliver(ledger, gateway, payment_succeeded(tool, buyer.id))

        assert outcome == ReconcileOutcome.IGNORED
        assert ledger_state.purchases == []

    async def test_subscription_tool_purchase_expires(
        self, ledger, ledger_state, gateway, seller, buyer, payment_succeeded
    ):
        tool = ledger_state.add_tool(seller.id, pricing_model=PricingModel.SUBSCRIPTION, price=500)

        await _deliver(ledger, gateway, payment_succeeded(tool, buyer.id, amount=500))

        expires_at = ledger_state.purchases[0].expires_at
        assert expires_at is not None
        expected = utc_now() + timedelta(days=30)
        assert abs((expires_at - expected).total_seconds()) < 60

    async def test_unknown_license_type_falls_back_to_pricing(
        self, ledger, ledger_state, gateway, seller, buyer, payment_succeeded
    ):
        tool = ledger_state.add_tool(seller.id, license_type=LicenseType.COMMERCIAL)

        await _deliver(
            ledger, gateway, payment_succeeded(tool, buyer.id, license_type="enterprise")
        )

        assert ledger_state.purchases[0].license_type == "commercial"

    async def test_second_sale_accumulates(
        self, ledger, ledger_state, gateway, paid_tool, seller, payment_succeeded
    ):
        first_buyer = ledger_state.add_user(email="a@example.com")
        second_buyer = ledger_state.add_user(email="b@example.com")

        await _deliver(
            ledger,
            gateway,
            payment_succeeded(paid_tool, first_buyer.id, event_id="evt_1", payment_intent_id="pi_1"),
        )
        await _deliver(
            ledger,
            gateway,
            payment_succeeded(
                paid_tool, second_buyer.id, event_id="evt_2", payment_intent_id="pi_2", amount=2500
            ),
        )

        earnings = ledger_state.earnings[seller.id]
        assert earnings.total_earnings == 700 + 1750
        assert earnings.pending_earnings == 700 + 1750
        assert earnings.lifetime_sales == 2


class TestOtherEvents:
    """Events that do not create purchases."""

    async def test_unknown_event_type_ignored_but_recorded(self, ledger, ledger_state, gateway):
        verified = VerifiedEvent(
            event_id="evt_unknown", event_type="charge.dispute.created", data_object={}
        )

        outcome = await _deliver(ledger, gateway, verified)

        assert outcome == ReconcileOutcome.IGNORED
        assert ledger_state.events["evt_unknown"].processed is True
        assert ledger_state.purchases == []

    async def test_payment_failed_writes_nothing(self, ledger, ledger_state, gateway):
        verified = VerifiedEvent(
            event_id="evt_fail",
            event_type="payment_intent.payment_failed",
            data_object={
                "id": "pi_9",
                "amount": 1000,
                "currency": "usd",
                "last_payment_error": {"message": "Card declined"},
            },
        )

        outcome = await _deliver(ledger, gateway, verified)

        assert outcome == ReconcileOutcome.APPLIED
        assert ledger_state.purchases == []
        assert ledger_state.billing_records == []


class TestSubscriptionEvents:
    """Subscription state always comes from a fresh gateway read."""

    @pytest.fixture
    def active_subscription(self, gateway) -> GatewaySubscription:
        subscription = GatewaySubscription(
            subscription_id="sub_123",
            customer_id="cus_buyer",
            status="active",
            current_period_start=1760572800,
            current_period_end=1763251200,
            cancel_at_period_end=False,
        )
        gateway.subscriptions["sub_123"] = subscription
        return subscription

    async def test_updated_event_syncs_latest_state(
        self, ledger, ledger_state, gateway, buyer, active_subscription
    ):
        verified = VerifiedEvent(
            event_id="evt_sub",
            event_type="customer.subscription.updated",
            # Payload says past_due; the gateway's current view wins
            data_object={"id": "sub_123", "customer": "cus_buyer", "status": "past_due"},
        )

        outcome = await _deliver(ledger, gateway, verified)

        assert outcome == ReconcileOutcome.APPLIED
        assert buyer.stripe_subscription_id == "sub_123"
        assert buyer.subscription_status == "active"
        assert buyer.subscription_current_period_end is not None
        assert len(ledger_state.subscriptions) == 1
        assert ledger_state.subscriptions[0].status == "active"

    async def test_unknown_customer_ignored(self, ledger, gateway, active_subscription):
        verified = VerifiedEvent(
            event_id="evt_sub",
            event_type="customer.subscription.created",
            data_object={"id": "sub_123", "customer": "cus_nobody", "status": "active"},
        )

        assert await _deliver(ledger, gateway, verified) == ReconcileOutcome.IGNORED

    async def test_deleted_event_cancels(
        self, ledger, ledger_state, gateway, buyer, active_subscription
    ):
        await _deliver(
            ledger,
            gateway,
            VerifiedEvent(
                event_id="evt_created",
                event_type="customer.subscription.created",
                data_object={"id": "sub_123", "customer": "cus_buyer", "status": "active"},
            ),
        )

        outcome = await _deliver(
            ledger,
            gateway,
            VerifiedEvent(
                event_id="evt_deleted",
                event_type="customer.subscription.deleted",
                data_object={"id": "sub_123", "customer": "cus_buyer", "status": "canceled"},
            ),
        )

        assert outcome == ReconcileOutcome.APPLIED
        assert buyer.subscription_status == "canceled"
        assert ledger_state.subscriptions[0].status == "canceled"

    async def test_stale_cancellation_leaves_current_subscription(
        self, ledger, gateway, buyer
    ):
        buyer.stripe_subscription_id = "sub_new"
        buyer.subscription_status = "active"

        await _deliver(
            ledger,
            gateway,
            VerifiedEvent(
                event_id="evt_deleted",
                event_type="customer.subscription.deleted",
                data_object={"id": "sub_old", "customer": "cus_buyer", "status": "canceled"},
            ),
        )

        assert buyer.stripe_subscription_id == "sub_new"
        assert buyer.subscription_status == "active"

    async def test_late_update_for_old_subscription_ignored(
        self, ledger, ledger_state, gateway, buyer
    ):
        buyer.stripe_subscription_id = "sub_new"
        buyer.subscription_status = "active"
        gateway.subscriptions["sub_old"] = GatewaySubscription(
            "sub_old", "cus_buyer", "canceled", 1757894400, 1760572800, False
        )

        outcome = await _deliver(
            ledger,
            gateway,
            VerifiedEvent(
                event_id="evt_old_updated",
                event_type="customer.subscription.updated",
                data_object={"id": "sub_old", "customer": "cus_buyer", "status": "canceled"},
            ),
        )

        assert outcome == ReconcileOutcome.APPLIED
        assert buyer.stripe_subscription_id == "sub_new"
        assert buyer.subscription_status == "active"
        assert ledger_state.subscriptions == []

    async def test_live_subscription_replaces_old_one(self, ledger, ledger_state, gateway, buyer):
        buyer.stripe_subscription_id = "sub_old"
        buyer.subscription_status = "canceled"
        gateway.subscriptions["sub_new"] = GatewaySubscription(
            "sub_new", "cus_buyer", "trialing", 1760572800, 1763251200, False
        )

        await _deliver(
            ledger,
            gateway,
            VerifiedEvent(
                event_id="evt_new_created",
                event_type="customer.subscription.created",
                data_object={"id": "sub_new", "customer": "cus_buyer", "status": "trialing"},
            ),
        )

        assert buyer.stripe_subscription_id == "sub_new"
        assert buyer.subscription_status == "trialing"
        assert ledger_state.subscriptions[0].stripe_subscription_id == "sub_new"


class TestInvoiceEvents:
    """invoice.* events write one billing line per invoice and status."""

    async def test_paid_invoice_recorded_once(
        self, ledger, ledger_state, gateway, buyer, invoice_event
    ):
        gateway.subscriptions["sub_123"] = GatewaySubscription(
            "sub_123", "cus_buyer", "active", 1760572800, 1763251200, False
        )

        first = await _deliver(ledger, gateway, invoice_event(event_id="evt_inv_1"))
        second = await _deliver(ledger, gateway, invoice_event(event_id="evt_inv_2"))

        assert first == second == ReconcileOutcome.APPLIED
        assert len(ledger_state.billing_records) == 1
        record = ledger_state.billing_records[0]
        assert record.user_id == buyer.id
        assert record.record_type == "invoice"
        assert record.status == "paid"
        assert record.amount == 2000
        assert record.details["invoiceNumber"] == "INV-0001"
        assert buyer.subscription_status == "active"

    async def test_failed_invoice_recorded(
        self, ledger, ledger_state, gateway, buyer, invoice_event
    ):
        outcome = await _deliver(
            ledger,
            gateway,
            invoice_event("invoice.payment_failed", subscription_id=None),
        )

        assert outcome == ReconcileOutcome.APPLIED
        record = ledger_state.billing_records[0]
        assert record.status == "failed"
        assert record.details["attemptCount"] == 2

    async def test_unknown_customer_ignored(self, ledger, ledger_state, gateway, invoice_event):
        outcome = await _deliver(
            ledger, gateway, invoice_event(customer_id="cus_unknown", subscription_id=None)
        )

        assert outcome == ReconcileOutcome.IGNORED
        assert ledger_state.billing_records == []

    async def test_failed_invoice_for_old_subscription_keeps_current_one(
        self, ledger, ledger_state, gateway, buyer, invoice_event
    ):
        buyer.stripe_subscription_id = "sub_new"
        buyer.subscription_status = "active"
        gateway.subscriptions["sub_old"] = GatewaySubscription(
            "sub_old", "cus_buyer", "unpaid", 1757894400, 1760572800, False
        )

        outcome = await _deliver(
            ledger,
            gateway,
            invoice_event("invoice.payment_failed", subscription_id="sub_old"),
        )

        assert outcome == ReconcileOutcome.APPLIED
        assert buyer.stripe_subscription_id == "sub_new"
        assert buyer.subscription_status == "active"
        assert ledger_state.billing_records[0].status == "failed"
