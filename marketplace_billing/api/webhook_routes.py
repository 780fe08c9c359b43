"""
Stripe webhook endpoint.

Verifies the signature on the raw body, parses the event into a typed variant
and hands it to the reconciler. A 500 tells Stripe to redeliver later.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from marketplace_billing.api.dependencies import get_payment_gateway
from marketplace_billing.config import settings
from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.session import get_write_db
from marketplace_billing.exceptions import WebhookPayloadError, WebhookVerificationError
from marketplace_billing.models.api import WebhookAck
from marketplace_billing.models.events import parse_event
from marketplace_billing.observability.logging import log_context
from marketplace_billing.observability.metrics import metrics
from marketplace_billing.services.payment_gateway import PaymentGateway
from marketplace_billing.services.reconciler import WebhookReconciler

logger = get_logger(__name__)
router = APIRouter(prefix="/api/stripe", tags=["webhooks"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> WebhookAck:
    """
    Handle Stripe webhook events.

    Returns 200 for applied, duplicate and ignored events alike.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    if not signature:
        logger.warning("stripe_webhook_missing_signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header",
        )

    try:
        verified = await gateway.verify_webhook(payload, signature)
        event = parse_event(verified)
    except WebhookVerificationError as exc:
        logger.warning("stripe_webhook_verification_failed", error=exc.message)
        metrics.record_webhook_event("unverified", "rejected", 0.0)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc
    except WebhookPayloadError as exc:
        logger.warning(
            "stripe_webhook_malformed", event_type=exc.event_type, error=exc.message
        )
        metrics.record_webhook_event(exc.event_type, "rejected", 0.0)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed webhook payload",
        ) from exc

    reconciler = WebhookReconciler(
        LedgerStore(db),
        gateway,
        platform_fee_percent=settings.platform_fee_percent,
        subscription_license_days=settings.subscription_license_days,
    )

    with log_context(event_id=event.event_id, event_type=event.event_type):
        logger.info("stripe_webhook_received")
        try:
            await reconciler.apply(event)
        except Exception as exc:
            # Already rolled back and recorded on the event row by the reconciler
            metrics.record_error(type(exc).__name__, "stripe_webhook")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from exc

    return WebhookAck()
