"""
Gateway Event Models - Tagged union of the webhook events the ledger understands.

NO DICTIONARIES - Verified webhook payloads are parsed once, here, into frozen
dataclasses. The reconciler matches on the variant type, so a new event kind
is an added variant plus an added ``case``, never a silently ignored string.
"""

from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError

from marketplace_billing.exceptions import WebhookPayloadError
from marketplace_billing.services.payment_gateway import VerifiedEvent

# ============================================================================
# Variants
# ============================================================================


@dataclass(frozen=True)
class PaymentSucceeded:
    """A tool purchase payment cleared."""

    event_id: str
    event_type: str
    payment_intent_id: str
    amount: int
    currency: str
    tool_id: UUID | None
    buyer_id: UUID | None
    seller_id: UUID | None
    license_type: str | None
    tool_name: str | None


@dataclass(frozen=True)
class PaymentFailed:
    """A tool purchase payment was declined."""

    event_id: str
    event_type: str
    payment_intent_id: str
    failure_message: str | None


@dataclass(frozen=True)
class SubscriptionChanged:
    """A subscription was created or updated."""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str
    status: str


@dataclass(frozen=True)
class SubscriptionCanceled:
    """A subscription ended."""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str


@dataclass(frozen=True)
class InvoicePaid:
    """A subscription invoice was paid."""

    event_id: str
    event_type: str
    invoice_id: str
    customer_id: str | None
    subscription_id: str | None
    amount: int
    currency: str
    description: str | None
    number: str | None
    hosted_invoice_url: str | None
    invoice_pdf: str | None
    period_start: int | None
    period_end: int | None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    """A subscription invoice payment attempt failed."""

    event_id: str
    event_type: str
    invoice_id: str
    customer_id: str | None
    subscription_id: str | None
    amount: int
    currency: str
    description: str | None
    number: str | None
    attempt_count: int


@dataclass(frozen=True)
class TrialWillEnd:
    """A subscription trial ends soon."""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str
    trial_end: int | None


@dataclass(frozen=True)
class UnhandledEvent:
    """Any event type the ledger does not act on."""

    event_id: str
    event_type: str


GatewayEvent = (
    PaymentSucceeded
    | PaymentFailed
    | SubscriptionChanged
    | SubscriptionCanceled
    | InvoicePaid
    | InvoicePaymentFailed
    | TrialWillEnd
    | UnhandledEvent
)


# ============================================================================
# Payload shapes (only the fields the ledger reads)
# ============================================================================


class _PayloadModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _PaymentError(_PayloadModel):
    message: str | None = None


class _PaymentIntentPayload(_PayloadModel):
    id: str
    amount: int
    amount_received: int | None = None
    currency: str
    metadata: dict[str, str] = {}
    last_payment_error: _PaymentError | None = None


class _SubscriptionPayload(_PayloadModel):
    id: str
    customer: str
    status: str
    trial_end: int | None = None


class _SubscriptionDetails(_PayloadModel):
    subscription: str | None = None


class _InvoiceParent(_PayloadModel):
    subscription_details: _SubscriptionDetails | None = None


class _InvoicePayload(_PayloadModel):
    id: str
    customer: str | None = None
    subscription: str | None = None
    parent: _InvoiceParent | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str
    description: str | None = None
    number: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    period_start: int | None = None
    period_end: int | None = None
    attempt_count: int = 0

    @property
    def subscription_id(self) -> str | None:
        """Subscription id, from the legacy field or the newer ``parent`` block."""
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


def _metadata_uuid(metadata: dict[str, str], key: str) -> UUID | None:
    raw = metadata.get(key)
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


# ============================================================================
# Parsers
# ============================================================================


def _parse_payment_succeeded(event: VerifiedEvent) -> PaymentSucceeded:
    payload = _PaymentIntentPayload.model_validate(event.data_object)
    return PaymentSucceeded(
        event_id=event.event_id,
        event_type=event.event_type,
        payment_intent_id=payload.id,
        # amount_received is authoritative once the intent has settled
        amount=payload.amount_received or payload.amount,
        currency=payload.currency,
        tool_id=_metadata_uuid(payload.metadata, "toolId"),
        buyer_id=_metadata_uuid(payload.metadata, "buyerId"),
        seller_id=_metadata_uuid(payload.metadata, "sellerId"),
        license_type=payload.metadata.get("licenseType"),
        tool_name=payload.metadata.get("toolName"),
    )


def _parse_payment_failed(event: VerifiedEvent) -> PaymentFailed:
    payload = _PaymentIntentPayload.model_validate(event.data_object)
    return PaymentFailed(
        event_id=event.event_id,
        event_type=event.event_type,
        payment_intent_id=payload.id,
        failure_message=payload.last_payment_error.message if payload.last_payment_error else None,
    )


def _parse_subscription_changed(event: VerifiedEvent) -> SubscriptionChanged:
    payload = _SubscriptionPayload.model_validate(event.data_object)
    return SubscriptionChanged(
        event_id=event.event_id,
        event_type=event.event_type,
        subscription_id=payload.id,
        customer_id=payload.customer,
        status=payload.status,
    )


def _parse_subscription_canceled(event: VerifiedEvent) -> SubscriptionCanceled:
    payload = _SubscriptionPayload.model_validate(event.data_object)
    return SubscriptionCanceled(
        event_id=event.event_id,
        event_type=event.event_type,
        subscription_id=payload.id,
        customer_id=payload.customer,
    )


def _parse_trial_will_end(event: VerifiedEvent) -> TrialWillEnd:
    payload = _SubscriptionPayload.model_validate(event.data_object)
    return TrialWillEnd(
        event_id=event.event_id,
        event_type=event.event_type,
        subscription_id=payload.id,
        customer_id=payload.customer,
        trial_end=payload.trial_end,
    )


def _parse_invoice_paid(event: VerifiedEvent) -> InvoicePaid:
    payload = _InvoicePayload.model_validate(event.data_object)
    return InvoicePaid(
        event_id=event.event_id,
        event_type=event.event_type,
        invoice_id=payload.id,
        customer_id=payload.customer,
        subscription_id=payload.subscription_id,
        amount=payload.amount_paid,
        currency=payload.currency,
        description=payload.description,
        number=payload.number,
        hosted_invoice_url=payload.hosted_invoice_url,
        invoice_pdf=payload.invoice_pdf,
        period_start=payload.period_start,
        period_end=payload.period_end,
    )


def _parse_invoice_failed(event: VerifiedEvent) -> InvoicePaymentFailed:
    payload = _InvoicePayload.model_validate(event.data_object)
    return InvoicePaymentFailed(
        event_id=event.event_id,
        event_type=event.event_type,
        invoice_id=payload.id,
        customer_id=payload.customer,
        subscription_id=payload.subscription_id,
        amount=payload.amount_due,
        currency=payload.currency,
        description=payload.description,
        number=payload.number,
        attempt_count=payload.attempt_count,
    )


_PARSERS: dict[str, Callable[[VerifiedEvent], GatewayEvent]] = {
    "payment_intent.succeeded": _parse_payment_succeeded,
    "payment_intent.payment_failed": _parse_payment_failed,
    "customer.subscription.created": _parse_subscription_changed,
    "customer.subscription.updated": _parse_subscription_changed,
    "customer.subscription.deleted": _parse_subscription_canceled,
    "customer.subscription.trial_will_end": _parse_trial_will_end,
    "invoice.payment_succeeded": _parse_invoice_paid,
    "invoice.payment_failed": _parse_invoice_failed,
}

HANDLED_EVENT_TYPES: frozenset[str] = frozenset(_PARSERS)


def parse_event(event: VerifiedEvent) -> GatewayEvent:
    """
    Parse a verified webhook into its variant.

    Unknown event types become UnhandledEvent without touching the payload.

    Raises:
        WebhookPayloadError: If a known event type carries an unexpected payload
    """
    parser = _PARSERS.get(event.event_type)
    if parser is None:
        return UnhandledEvent(event_id=event.event_id, event_type=event.event_type)
    try:
        return parser(event)
    except ValidationError as exc:
        raise WebhookPayloadError(event.event_type, str(exc)) from exc

