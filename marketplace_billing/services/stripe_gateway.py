"""
Stripe Payment Gateway Implementation.

NO DICTIONARIES - All data uses strongly typed models.

The Stripe SDK is synchronous; every call runs in a worker thread bounded by
``timeout_seconds`` so a hung request surfaces as PaymentProviderError instead
of stalling the event loop.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any, TypeVar

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog import get_logger

from marketplace_billing.exceptions import (
    PaymentProviderError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from marketplace_billing.services.payment_gateway import (
    ChargeDetails,
    GatewayAccount,
    GatewaySubscription,
    PaymentIntentRequest,
    PaymentIntentResult,
    ProductPrice,
    TransferRequest,
    TransferResult,
    VerifiedEvent,
)

logger = get_logger(__name__)

T = TypeVar("T")


class _EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object_: dict[str, Any] = Field(..., alias="object")


class _EventEnvelope(BaseModel):
    """Outer shape of a Stripe event: {id, type, data: {object}}."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    data: _EventData


class StripeGateway:
    """
    Stripe payment gateway implementation.

    Implements the PaymentGateway protocol. Holds no state beyond credentials,
    so one instance is built at startup and shared by all requests.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 30.0) -> None:
        """
        Initialize Stripe gateway.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound on any single Stripe call
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call off the event loop with a timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            logger.error(
                "stripe_call_timed_out",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise PaymentProviderError(
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"{operation} failed: {exc.user_message or exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedEvent:
        """
        Verify and parse a Stripe webhook envelope.

        Args:
            payload: Raw request body, byte-for-byte as received
            signature: Stripe-Signature header value

        Returns:
            Verified event with its unparsed data object

        Raises:
            WebhookVerificationError: If signature verification fails
            WebhookPayloadError: If the envelope is not {id, type, data: {object}}
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_signature_invalid", error=str(exc))
            raise WebhookVerificationError("Invalid signature") from exc
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Payload is not valid UTF-8") from exc

        try:
            envelope = _EventEnvelope.model_validate(json.loads(payload))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("stripe_webhook_envelope_invalid", error=str(exc))
            raise WebhookPayloadError("envelope", str(exc)) from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=envelope.id,
            event_type=envelope.type,
        )
        return VerifiedEvent(
            event_id=envelope.id,
            event_type=envelope.type,
            data_object=envelope.data.object_,
        )

    async def create_transfer(self, request: TransferRequest) -> TransferResult:
        """
        Create a Stripe transfer to a connected account.

        The idempotency key makes a network-level retry of the same payout
        collapse into one transfer on Stripe's side.
        """
        logger.info(
            "creating_stripe_transfer",
            amount_minor=request.amount_minor,
            destination=request.destination_account_id,
            idempotency_key=request.idempotency_key,
        )
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create,
            amount=request.amount_minor,
            currency=request.currency,
            destination=request.destination_account_id,
            description=request.description,
            metadata={"userId": request.metadata_user_id, "payoutId": request.metadata_payout_id},
            idempotency_key=request.idempotency_key,
        )
        logger.info("stripe_transfer_created", transfer_id=transfer.id)
        return TransferResult(
            transfer_id=transfer.id,
            amount_minor=transfer.amount,
            destination_account_id=request.destination_account_id,
        )

    async def retrieve_account(self, account_id: str) -> GatewayAccount:
        """Read live capability flags of a connected account."""
        account = await self._call("retrieve_account", stripe.Account.retrieve, account_id)
        return GatewayAccount(
            account_id=account.id,
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
        )

    async def create_connected_account(self, user_id: str, email: str | None) -> str:
        """Create an Express account able to receive transfers."""
        account = await self._call(
            "create_connected_account",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={"transfers": {"requested": True}},
            metadata={"userId": user_id},
            idempotency_key=f"connect-account-{user_id}",
        )
        logger.info("stripe_connected_account_created", account_id=account.id, user_id=user_id)
        return str(account.id)

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        """Create a one-time Connect onboarding URL."""
        link = await self._call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return str(link.url)

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """
        Fetch the latest subscription state.

        Newer API versions report billing periods on the subscription items
        rather than the subscription itself; both shapes are accepted.
        """
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        period_start = subscription.get("current_period_start")
        period_end = subscription.get("current_period_end")
        if period_end is None:
            items = subscription.get("items")
            item_data = items.get("data") if items else None
            if item_data:
                period_start = item_data[0].get("current_period_start")
                period_end = item_data[0].get("current_period_end")

        customer = subscription.get("customer")
        customer_id = customer if isinstance(customer, str) else customer.id
        return GatewaySubscription(
            subscription_id=subscription.id,
            customer_id=customer_id,
            status=subscription.status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        )

    async def retrieve_charge_details(self, payment_intent_id: str) -> ChargeDetails:
        """Fetch the charge id and receipt URL behind a payment intent."""
        payment_intent = await self._call(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            expand=["latest_charge"],
        )
        charge = payment_intent.get("latest_charge")
        if charge is None:
            return ChargeDetails(charge_id=None, receipt_url=None)
        if isinstance(charge, str):
            return ChargeDetails(charge_id=charge, receipt_url=None)
        return ChargeDetails(charge_id=charge.id, receipt_url=charge.get("receipt_url"))

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        """Create a Stripe PaymentIntent for a tool purchase."""
        logger.info(
            "creating_stripe_payment_intent",
            amount_minor=request.amount_minor,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
        )
        payment_intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=request.amount_minor,
            currency=request.currency,
            description=request.description,
            metadata=request.metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=request.idempotency_key,
        )
        logger.info(
            "stripe_payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return PaymentIntentResult(
            payment_intent_id=payment_intent.id,
            client_secret=payment_intent.client_secret or "",
            status=payment_intent.status,
            amount_minor=payment_intent.amount,
            currency=payment_intent.currency,
        )

    async def create_product_price(
        self, name: str, tool_id: str, amount_minor: int, currency: str
    ) -> ProductPrice:
        """Create a catalog product and one-time price for a paid tool."""
        product = await self._call(
            "create_product",
            stripe.Product.create,
            name=name,
            metadata={"toolId": tool_id},
        )
        price = await self._call(
            "create_price",
            stripe.Price.create,
            product=product.id,
            unit_amount=amount_minor,
            currency=currency,
        )
        return ProductPrice(product_id=product.id, price_id=price.id)
