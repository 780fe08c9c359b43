"""
Access Gate - Decides whether a user may use a tool.

Read-only consumer of the pricing and purchase rows the reconciler writes.
"""

from uuid import UUID

from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.models import ToolPricing, utc_now
from marketplace_billing.models.api import AccessReason, LicenseType, PricingModel
from marketplace_billing.models.domain import AccessDecision, PricingData


def pricing_to_domain(pricing: ToolPricing) -> PricingData:
    """Convert ORM pricing row to domain model."""
    return PricingData(
        tool_id=pricing.tool_id,
        pricing_model=PricingModel(pricing.pricing_model),
        price=pricing.price,
        currency=pricing.currency,
        license_type=LicenseType(pricing.license_type),
    )


def free_pricing(tool_id: UUID, currency: str) -> PricingData:
    """Pricing reported for tools that were never priced."""
    return PricingData(
        tool_id=tool_id,
        pricing_model=PricingModel.FREE,
        price=0,
        currency=currency,
        license_type=LicenseType.PERSONAL,
    )


class AccessGate:
    """
    Access checks, evaluated in order:

    1. Free (or unpriced) tools are open to everyone
    2. Anonymous callers are denied
    3. The tool's creator always has access
    4. An unexpired purchase grants access
    """

    def __init__(self, ledger: LedgerStore, currency: str = "usd") -> None:
        self.ledger = ledger
        self.currency = currency

    async def check_access(self, user_id: UUID | None, tool_id: UUID) -> AccessDecision:
        row = await self.ledger.find_pricing(tool_id)
        pricing = pricing_to_domain(row) if row is not None else free_pricing(tool_id, self.currency)

        if pricing.is_free:
            return AccessDecision(has_access=True, reason=AccessReason.FREE, pricing=pricing)

        if user_id is None:
            return AccessDecision(
                has_access=False, reason=AccessReason.NOT_AUTHENTICATED, pricing=pricing
            )

        tool = await self.ledger.get_tool(tool_id)
        if tool is not None and tool.created_by == user_id:
            return AccessDecision(has_access=True, reason=AccessReason.OWNER, pricing=pricing)

        purchase = await self.ledger.find_active_purchase(user_id, tool_id, utc_now())
        if purchase is not None:
            return AccessDecision(
                has_access=True,
                reason=AccessReason.PURCHASED,
                pricing=pricing,
                expires_at=purchase.expires_at,
            )

        return AccessDecision(has_access=False, reason=AccessReason.NOT_PURCHASED, pricing=pricing)
