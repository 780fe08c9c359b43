"""
Marketplace Service - Tool pricing, purchase intents and buyer/creator views.

Purchases themselves are written by the webhook reconciler once the payment
succeeds; this service only opens the payment and reads the results.
"""

from uuid import UUID

from structlog import get_logger

from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.models import Purchase, utc_now
from marketplace_billing.exceptions import (
    AlreadyPurchasedError,
    InvalidPricingError,
    NotToolOwnerError,
    ToolNotForSaleError,
    ToolNotFoundError,
)
from marketplace_billing.models.api import LicenseType, PricingModel
from marketplace_billing.models.domain import EarningsData, PricingData, PurchaseIntentData
from marketplace_billing.services.access import free_pricing, pricing_to_domain
from marketplace_billing.services.payment_gateway import PaymentGateway, PaymentIntentRequest
from marketplace_billing.services.payouts import earnings_to_domain

logger = get_logger(__name__)


class MarketplaceService:
    """Pricing and purchase flows for marketplace tools."""

    def __init__(self, ledger: LedgerStore, gateway: PaymentGateway, currency: str) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.currency = currency

    async def get_pricing(self, tool_id: UUID) -> PricingData:
        """Current pricing; tools that were never priced are free."""
        row = await self.ledger.find_pricing(tool_id)
        if row is None:
            return free_pricing(tool_id, self.currency)
        return pricing_to_domain(row)

    async def set_pricing(
        self,
        user_id: UUID,
        tool_id: UUID,
        pricing_model: PricingModel,
        price: int,
        license_type: LicenseType,
    ) -> PricingData:
        """
        Price a tool. Only its creator may do so.

        Paid tools get a fresh catalog product and price at the provider.

        Raises:
            ToolNotFoundError: Unknown tool
            NotToolOwnerError: Caller did not create the tool
            InvalidPricingError: Model and price disagree
        """
        tool = await self.ledger.get_tool(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)
        if tool.created_by != user_id:
            raise NotToolOwnerError(tool_id)

        if pricing_model == PricingModel.FREE and price != 0:
            raise InvalidPricingError("Free tools cannot have a price")
        if pricing_model != PricingModel.FREE and price <= 0:
            raise InvalidPricingError("Price required for paid tools")

        product_id: str | None = None
        price_id: str | None = None
        if pricing_model != PricingModel.FREE:
            catalog = await self.gateway.create_product_price(
                tool.title, str(tool_id), price, self.currency
            )
            product_id, price_id = catalog.product_id, catalog.price_id

        try:
            row = await self.ledger.save_pricing(
                tool_id=tool_id,
                pricing_model=pricing_model.value,
                price=price,
                currency=self.currency,
                license_type=license_type.value,
                stripe_product_id=product_id,
                stripe_price_id=price_id,
            )
            await self.ledger.commit()
        except Exception:
            await self.ledger.rollback()
            raise

        logger.info(
            "tool_pricing_set",
            tool_id=str(tool_id),
            pricing_model=pricing_model.value,
            price_minor=price,
            stripe_price_id=price_id,
        )
        return pricing_to_domain(row)

    async def create_purchase_intent(self, buyer_id: UUID, tool_id: UUID) -> PurchaseIntentData:
        """
        Open a payment for a tool.

        The idempotency key covers buyer, tool, price and license, so repeated
        clicks while a payment is open return the same intent instead of a
        second charge.
        """
        tool = await self.ledger.get_tool(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)

        existing = await self.ledger.find_active_purchase(buyer_id, tool_id, utc_now())
        if existing is not None:
            raise AlreadyPurchasedError(tool_id, existing.id)

        row = await self.ledger.find_pricing(tool_id)
        if row is None:
            raise ToolNotForSaleError(tool_id)
        pricing = pricing_to_domain(row)
        if pricing.is_free:
            raise ToolNotForSaleError(tool_id)

        license_type = pricing.license_type.value
        intent = await self.gateway.create_payment_intent(
            PaymentIntentRequest(
                amount_minor=pricing.price,
                currency=pricing.currency,
                description=f"Purchase: {tool.title}",
                idempotency_key=f"purchase-{buyer_id}-{tool_id}-{pricing.price}-{license_type}",
                metadata={
                    "toolId": str(tool_id),
                    "buyerId": str(buyer_id),
                    "sellerId": str(tool.created_by),
                    "licenseType": license_type,
                    "toolName": tool.title,
                },
            )
        )
        logger.info(
            "purchase_intent_created",
            tool_id=str(tool_id),
            buyer_id=str(buyer_id),
            payment_intent_id=intent.payment_intent_id,
            amount_minor=intent.amount_minor,
        )
        return PurchaseIntentData(
            payment_intent_id=intent.payment_intent_id,
            client_secret=intent.client_secret,
            amount=intent.amount_minor,
            currency=intent.currency,
        )

    async def list_purchases(self, buyer_id: UUID) -> list[tuple[Purchase, str | None]]:
        return await self.ledger.list_purchases_for_buyer(buyer_id)

    async def earnings_summary(
        self, user_id: UUID, recent_limit: int = 50
    ) -> tuple[EarningsData, list[tuple[Purchase, str | None]]]:
        """Creator balance (zeroes before the first sale) and latest sales."""
        row = await self.ledger.find_earnings(user_id)
        earnings = (
            earnings_to_domain(row)
            if row is not None
            else EarningsData(
                user_id=user_id,
                total_earnings=0,
                pending_earnings=0,
                lifetime_sales=0,
                stripe_account_id=None,
                last_payout_at=None,
            )
        )
        sales = await self.ledger.list_recent_sales(user_id, limit=recent_limit)
        return earnings, sales
