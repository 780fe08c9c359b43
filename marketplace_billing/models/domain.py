"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
All money is integer minor units (cents).
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from marketplace_billing.models.api import AccessReason, LicenseType, PayoutStatus, PricingModel


@dataclass(frozen=True)
class PurchaseSplit:
    """Revenue split of a single purchase, fixed at the moment of purchase."""

    amount: int
    platform_fee: int
    creator_earnings: int

    def __post_init__(self) -> None:
        """Validate split constraints."""
        if self.amount < 0:
            raise ValueError(f"Purchase amount cannot be negative: {self.amount}")
        if self.platform_fee < 0 or self.creator_earnings < 0:
            raise ValueError("Split parts cannot be negative")
        if self.platform_fee + self.creator_earnings != self.amount:
            raise ValueError(
                f"Split does not balance: {self.platform_fee} + {self.creator_earnings} "
                f"!= {self.amount}"
            )

    @classmethod
    def from_amount(cls, amount: int, platform_fee_percent: int) -> "PurchaseSplit":
        """
        Split an amount between platform and creator.

        The platform fee is floor(amount * percent / 100) in integer arithmetic,
        so odd amounts round in the creator's favour.
        """
        platform_fee = amount * platform_fee_percent // 100
        return cls(
            amount=amount,
            platform_fee=platform_fee,
            creator_earnings=amount - platform_fee,
        )


@dataclass(frozen=True)
class PayoutIntent:
    """Domain model for a payout before persistence - immutable intent."""

    user_id: UUID
    amount: int

    def __post_init__(self) -> None:
        """Validate payout constraints."""
        if self.amount <= 0:
            raise ValueError(f"Payout amount must be positive: {self.amount}")


@dataclass(frozen=True)
class EarningsData:
    """Immutable creator balance snapshot."""

    user_id: UUID
    total_earnings: int
    pending_earnings: int
    lifetime_sales: int
    stripe_account_id: str | None
    last_payout_at: datetime | None

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.pending_earnings < 0:
            raise ValueError(f"Pending earnings cannot be negative: {self.pending_earnings}")
        if self.pending_earnings > self.total_earnings:
            raise ValueError(
                f"Pending earnings {self.pending_earnings} exceed total {self.total_earnings}"
            )


@dataclass(frozen=True)
class PayoutData:
    """Immutable payout record."""

    payout_id: UUID
    user_id: UUID
    amount: int
    status: PayoutStatus
    stripe_transfer_id: str | None
    stripe_account_id: str
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class PayoutOutcome:
    """Finalized payout plus the balance left after it."""

    payout: PayoutData
    remaining_balance: int

    @property
    def succeeded(self) -> bool:
        return self.payout.status == PayoutStatus.COMPLETED


@dataclass(frozen=True)
class PricingData:
    """Immutable tool pricing."""

    tool_id: UUID
    pricing_model: PricingModel
    price: int
    currency: str
    license_type: LicenseType

    @property
    def is_free(self) -> bool:
        return self.pricing_model == PricingModel.FREE or self.price == 0


@dataclass(frozen=True)
class AccessDecision:
    """Whether a user may invoke a tool, and why."""

    has_access: bool
    reason: AccessReason
    pricing: PricingData | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PurchaseIntentData:
    """Result of opening a payment for a tool purchase."""

    payment_intent_id: str
    client_secret: str
    amount: int
    currency: str
