"""
Payment Gateway Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models. The only untyped value
is the raw event object of a verified webhook, which models.events parses.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class VerifiedEvent:
    """
    Webhook event whose signature has been checked.

    ``data_object`` is the provider's ``data.object`` payload, still unparsed.
    """

    event_id: str
    event_type: str
    data_object: dict[str, Any]


@dataclass(frozen=True)
class TransferRequest:
    """Request to move funds to a connected account."""

    amount_minor: int
    currency: str
    destination_account_id: str
    idempotency_key: str
    description: str
    metadata_user_id: str
    metadata_payout_id: str


@dataclass(frozen=True)
class TransferResult:
    """Accepted transfer."""

    transfer_id: str
    amount_minor: int
    destination_account_id: str


@dataclass(frozen=True)
class GatewayAccount:
    """Capability flags of a connected account, read live from the provider."""

    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


@dataclass(frozen=True)
class GatewaySubscription:
    """Latest known state of a subscription."""

    subscription_id: str
    customer_id: str
    status: str
    current_period_start: int | None
    current_period_end: int | None
    cancel_at_period_end: bool


@dataclass(frozen=True)
class ChargeDetails:
    """Charge behind a payment intent, used for receipts."""

    charge_id: str | None
    receipt_url: str | None


@dataclass(frozen=True)
class PaymentIntentRequest:
    """Request to open a payment for a tool purchase."""

    amount_minor: int
    currency: str
    description: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentResult:
    """Opened payment intent."""

    payment_intent_id: str
    client_secret: str
    status: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class ProductPrice:
    """Catalog product and price created for a paid tool."""

    product_id: str
    price_id: str


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Stateless RPC facade over the payment processor. Every method raises
    PaymentProviderError on provider failure or timeout.
    """

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedEvent:
        """
        Verify a webhook signature against the shared secret.

        Raises:
            WebhookVerificationError: If the signature or envelope is invalid
        """
        ...

    async def create_transfer(self, request: TransferRequest) -> TransferResult:
        """Transfer funds to a connected account, deduplicated by idempotency key."""
        ...

    async def retrieve_account(self, account_id: str) -> GatewayAccount:
        """Read a connected account's live capability flags."""
        ...

    async def create_connected_account(self, user_id: str, email: str | None) -> str:
        """Create an Express account with the transfers capability. Returns its id."""
        ...

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        """Create a one-time onboarding URL."""
        ...

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Fetch the latest state of a subscription."""
        ...

    async def retrieve_charge_details(self, payment_intent_id: str) -> ChargeDetails:
        """Fetch the charge id and receipt URL behind a payment intent."""
        ...

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        """Open a payment for a purchase."""
        ...

    async def create_product_price(
        self, name: str, tool_id: str, amount_minor: int, currency: str
    ) -> ProductPrice:
        """Create a catalog product and one-time price."""
        ...
