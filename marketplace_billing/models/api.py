"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All API contracts are strongly typed. JSON field names are
camelCase to match the marketplace frontend; Python attributes stay snake_case.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PayoutStatus(str, Enum):
    """Payout lifecycle states. pending transitions exactly once."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PricingModel(str, Enum):
    """How a tool is sold."""

    FREE = "free"
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class LicenseType(str, Enum):
    """License granted by a purchase."""

    PERSONAL = "personal"
    COMMERCIAL = "commercial"


class BillingRecordType(str, Enum):
    """Kind of user-facing billing line."""

    INVOICE = "invoice"
    CHARGE = "charge"
    REFUND = "refund"


class BillingRecordStatus(str, Enum):
    """Settlement state of a billing line."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class AccessReason(str, Enum):
    """Why the access gate granted or denied a tool."""

    FREE = "free"
    OWNER = "owner"
    PURCHASED = "purchased"
    NOT_PURCHASED = "not_purchased"
    NOT_AUTHENTICATED = "not_authenticated"


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(CamelModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True


# ============================================================================
# Payouts
# ============================================================================


class PayoutRequest(CamelModel):
    """Request body for a creator payout."""

    amount: int = Field(..., gt=0, description="Amount in minor units (cents)")


class PayoutResponse(CamelModel):
    """A single payout record."""

    id: UUID
    amount: int
    status: PayoutStatus
    stripe_transfer_id: str | None = None
    stripe_account_id: str
    failure_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class PayoutResultResponse(CamelModel):
    """Successful payout result."""

    message: str
    payout: PayoutResponse
    remaining_balance: int


class PayoutFailedResponse(CamelModel):
    """Durably recorded transfer failure. The balance is untouched."""

    code: str = "PAYOUT_FAILED"
    message: str
    failure_reason: str | None
    payout: PayoutResponse
    remaining_balance: int


class EarningsSummary(CamelModel):
    """Creator balance snapshot."""

    total_earnings: int
    pending_earnings: int
    lifetime_sales: int
    stripe_account_id: str | None = None
    last_payout_at: datetime | None = None


class PayoutHistoryResponse(CamelModel):
    """Payout history page plus current balance."""

    payouts: list[PayoutResponse]
    earnings: EarningsSummary | None = None


class ConnectAccountStatus(CamelModel):
    """Live capability flags of a connected account."""

    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


class ConnectStatusResponse(CamelModel):
    """Stripe Connect onboarding state for the current creator."""

    connected: bool
    stripe_account_id: str | None = None
    account_status: ConnectAccountStatus | None = None
    pending_earnings: int = 0
    total_earnings: int = 0


class ConnectAccountResponse(CamelModel):
    """Onboarding link for a connected account."""

    url: str
    account_id: str


# ============================================================================
# Marketplace
# ============================================================================


class PricingResponse(CamelModel):
    """Tool pricing as shown to buyers."""

    tool_id: UUID
    pricing_model: PricingModel
    price: int
    currency: str
    license_type: LicenseType


class SetPricingRequest(CamelModel):
    """Creator request to (re)price a tool."""

    pricing_model: PricingModel
    price: int = Field(0, ge=0, description="Price in minor units (cents)")
    license_type: LicenseType = LicenseType.PERSONAL


class PurchaseIntentRequest(CamelModel):
    """Buyer request to start paying for a tool."""

    tool_id: UUID


class PurchaseIntentResponse(CamelModel):
    """Client secret for confirming the payment on the frontend."""

    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
    publishable_key: str


class AccessCheckResponse(CamelModel):
    """Access gate decision."""

    has_access: bool
    reason: AccessReason
    pricing: PricingResponse | None = None
    expires_at: datetime | None = None


class PurchaseItem(CamelModel):
    """A purchase as seen by its buyer."""

    id: UUID
    tool_id: UUID
    tool_title: str | None = None
    amount: int
    license_type: LicenseType
    created_at: datetime
    expires_at: datetime | None = None


class MyPurchasesResponse(CamelModel):
    """Buyer's purchases, newest first."""

    purchases: list[PurchaseItem]


class SaleItem(CamelModel):
    """A sale as seen by its creator."""

    id: UUID
    tool_id: UUID
    tool_title: str | None = None
    amount: int
    platform_fee: int
    creator_earnings: int
    created_at: datetime


class MyEarningsResponse(CamelModel):
    """Creator earnings summary with the most recent sales."""

    earnings: EarningsSummary
    recent_sales: list[SaleItem]


# ============================================================================
# Billing History
# ============================================================================


class BillingRecordResponse(CamelModel):
    """One receipt or invoice line."""

    id: UUID
    type: BillingRecordType
    status: BillingRecordStatus
    amount: int
    currency: str
    description: str | None = None
    stripe_invoice_id: str | None = None
    stripe_charge_id: str | None = None
    receipt_url: str | None = None
    details: dict[str, str | int | None] = Field(default_factory=dict)
    created_at: datetime


class Pagination(CamelModel):
    """Page metadata."""

    page: int
    limit: int
    total: int
    total_pages: int


class BillingHistoryResponse(CamelModel):
    """Filtered, paginated billing history."""

    records: list[BillingRecordResponse]
    pagination: Pagination


class BillingStatsResponse(CamelModel):
    """Billing totals for the current user."""

    total_spent: int
    total_invoices: int
    total_charges: int
    total_refunds: int
