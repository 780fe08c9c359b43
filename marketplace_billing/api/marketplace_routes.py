"""
Marketplace routes - Tool pricing, purchases, access checks and creator earnings.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_billing.api.dependencies import (
    AuthenticatedUser,
    get_current_user,
    get_optional_user,
    get_payment_gateway,
)
from marketplace_billing.api.payout_routes import earnings_summary
from marketplace_billing.config import settings
from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.session import get_read_db, get_write_db
from marketplace_billing.models.api import (
    AccessCheckResponse,
    LicenseType,
    MyEarningsResponse,
    MyPurchasesResponse,
    PricingResponse,
    PurchaseIntentRequest,
    PurchaseIntentResponse,
    PurchaseItem,
    SaleItem,
    SetPricingRequest,
)
from marketplace_billing.models.domain import PricingData
from marketplace_billing.services.access import AccessGate
from marketplace_billing.services.marketplace import MarketplaceService
from marketplace_billing.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/api/marketplace", tags=["marketplace"])


def _pricing_response(pricing: PricingData) -> PricingResponse:
    return PricingResponse(
        tool_id=pricing.tool_id,
        pricing_model=pricing.pricing_model,
        price=pricing.price,
        currency=pricing.currency,
        license_type=pricing.license_type,
    )


@router.get("/pricing/{tool_id}", response_model=PricingResponse)
async def get_pricing(
    tool_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PricingResponse:
    """Public pricing; unpriced tools report as free."""
    service = MarketplaceService(LedgerStore(db), gateway, settings.currency)
    return _pricing_response(await service.get_pricing(tool_id))


@router.post("/pricing/{tool_id}", response_model=PricingResponse)
async def set_pricing(
    tool_id: UUID,
    body: SetPricingRequest,
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> PricingResponse:
    service = MarketplaceService(LedgerStore(db), gateway, settings.currency)
    pricing = await service.set_pricing(
        user.user_id, tool_id, body.pricing_model, body.price, body.license_type
    )
    return _pricing_response(pricing)


@router.post("/purchase", response_model=PurchaseIntentResponse)
async def purchase_tool(
    body: PurchaseIntentRequest,
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> PurchaseIntentResponse:
    """
    Open a payment for a tool.

    The purchase row is written later by the payment_intent.succeeded webhook.
    """
    service = MarketplaceService(LedgerStore(db), gateway, settings.currency)
    intent = await service.create_purchase_intent(user.user_id, body.tool_id)
    return PurchaseIntentResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.payment_intent_id,
        amount=intent.amount,
        currency=intent.currency,
        publishable_key=settings.stripe_publishable_key,
    )


@router.get("/check-access/{tool_id}", response_model=AccessCheckResponse)
async def check_access(
    tool_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    user: AuthenticatedUser | None = Depends(get_optional_user),
) -> AccessCheckResponse:
    decision = await AccessGate(LedgerStore(db), settings.currency).check_access(
        user.user_id if user is not None else None, tool_id
    )
    return AccessCheckResponse(
        has_access=decision.has_access,
        reason=decision.reason,
        pricing=_pricing_response(decision.pricing) if decision.pricing is not None else None,
        expires_at=decision.expires_at,
    )


@router.get("/my-purchases", response_model=MyPurchasesResponse)
async def my_purchases(
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> MyPurchasesResponse:
    service = MarketplaceService(LedgerStore(db), gateway, settings.currency)
    rows = await service.list_purchases(user.user_id)
    return MyPurchasesResponse(
        purchases=[
            PurchaseItem(
                id=purchase.id,
                tool_id=purchase.tool_id,
                tool_title=title,
                amount=purchase.amount,
                license_type=LicenseType(purchase.license_type),
                created_at=purchase.created_at,
                expires_at=purchase.expires_at,
            )
            for purchase, title in rows
        ]
    )


@router.get("/my-earnings", response_model=MyEarningsResponse)
async def my_earnings(
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> MyEarningsResponse:
    service = MarketplaceService(LedgerStore(db), gateway, settings.currency)
    earnings, sales = await service.earnings_summary(user.user_id)
    return MyEarningsResponse(
        earnings=earnings_summary(earnings),
        recent_sales=[
            SaleItem(
                id=sale.id,
                tool_id=sale.tool_id,
                tool_title=title,
                amount=sale.amount,
                platform_fee=sale.platform_fee,
                creator_earnings=sale.creator_earnings,
                created_at=sale.created_at,
            )
            for sale, title in sales
        ],
    )
