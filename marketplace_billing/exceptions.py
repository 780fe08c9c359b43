"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes. Business rule errors
expose their structured fields through ``context()`` only at the HTTP boundary.
"""

from uuid import UUID


class MarketplaceError(Exception):
    """Base exception for all marketplace billing errors."""

    pass


# ============================================================================
# Business Rule Errors - expected, user-facing, resolved into 4xx responses
# ============================================================================


class BusinessRuleError(MarketplaceError):
    """Raised when a request violates a ledger or marketplace rule."""

    code: str = "BUSINESS_RULE_VIOLATION"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def context(self) -> dict[str, int | str | None]:
        """Structured fields the client needs to self-correct."""
        return {}


class NoEarningsAccountError(BusinessRuleError):
    """Raised when a creator has never earned or connected an account."""

    code = "NO_EARNINGS_ACCOUNT"
    status_code = 404

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("No earnings account found")


class GatewayAccountNotConnectedError(BusinessRuleError):
    """Raised when a payout is requested before Stripe Connect onboarding."""

    code = "GATEWAY_ACCOUNT_NOT_CONNECTED"

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Please connect your Stripe account first")


class MinimumNotMetError(BusinessRuleError):
    """Raised when the withdrawable balance is below the payout threshold."""

    code = "MINIMUM_NOT_MET"

    def __init__(self, pending_earnings: int, minimum: int) -> None:
        self.pending_earnings = pending_earnings
        self.minimum = minimum
        super().__init__(
            f"Minimum payout is {minimum} minor units. Current balance: {pending_earnings}"
        )

    def context(self) -> dict[str, int | str | None]:
        return {"pendingEarnings": self.pending_earnings, "minimumPayout": self.minimum}


class InvalidPayoutAmountError(BusinessRuleError):
    """Raised when the requested amount is below the payout threshold."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount: int, minimum: int) -> None:
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Payout amount must be at least {minimum} minor units, got {amount}")

    def context(self) -> dict[str, int | str | None]:
        return {"requestedAmount": self.amount, "minimumPayout": self.minimum}


class InsufficientBalanceError(BusinessRuleError):
    """Raised when the requested amount exceeds the withdrawable balance."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, pending_earnings: int, requested: int) -> None:
        self.pending_earnings = pending_earnings
        self.requested = requested
        super().__init__(
            f"Insufficient balance. Available: {pending_earnings}, Requested: {requested}"
        )

    def context(self) -> dict[str, int | str | None]:
        return {"pendingEarnings": self.pending_earnings, "requestedAmount": self.requested}


class PayoutsNotEnabledError(BusinessRuleError):
    """Raised when the connected account cannot currently receive payouts."""

    code = "PAYOUTS_NOT_ENABLED"

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(
            "Your Stripe account is not yet enabled for payouts. "
            "Please complete the onboarding process."
        )


class ToolNotFoundError(BusinessRuleError):
    """Raised when a tool doesn't exist."""

    code = "TOOL_NOT_FOUND"
    status_code = 404

    def __init__(self, tool_id: UUID) -> None:
        self.tool_id = tool_id
        super().__init__(f"Tool not found: {tool_id}")


class NotToolOwnerError(BusinessRuleError):
    """Raised when a non-owner tries to manage a tool's pricing."""

    code = "NOT_TOOL_OWNER"
    status_code = 403

    def __init__(self, tool_id: UUID) -> None:
        self.tool_id = tool_id
        super().__init__("Only the tool owner can set pricing")


class InvalidPricingError(BusinessRuleError):
    """Raised when a pricing model and price disagree."""

    code = "INVALID_PRICING"


class ToolNotForSaleError(BusinessRuleError):
    """Raised when a purchase is attempted on a free or unpriced tool."""

    code = "TOOL_NOT_FOR_SALE"

    def __init__(self, tool_id: UUID) -> None:
        self.tool_id = tool_id
        super().__init__("This tool is free or not for sale")


class AlreadyPurchasedError(BusinessRuleError):
    """Raised when the buyer already holds an active license."""

    code = "ALREADY_PURCHASED"

    def __init__(self, tool_id: UUID, purchase_id: UUID) -> None:
        self.tool_id = tool_id
        self.purchase_id = purchase_id
        super().__init__("You already own this tool")

    def context(self) -> dict[str, int | str | None]:
        return {"purchaseId": str(self.purchase_id)}


class BillingRecordNotFoundError(BusinessRuleError):
    """Raised when a billing record doesn't exist or belongs to someone else."""

    code = "BILLING_RECORD_NOT_FOUND"
    status_code = 404

    def __init__(self, record_id: UUID) -> None:
        self.record_id = record_id
        super().__init__("Billing record not found")


class RateLimitExceededError(BusinessRuleError):
    """Raised when a caller exceeds a fixed-window request budget."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Too many payout requests. Please try again later.")

    def context(self) -> dict[str, int | str | None]:
        return {"retryAfter": self.retry_after_seconds}


# ============================================================================
# Boundary Errors - rejected before any ledger logic runs
# ============================================================================


class AuthenticationError(MarketplaceError):
    """Raised when a bearer token is missing, expired or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class WebhookVerificationError(MarketplaceError):
    """Raised when webhook signature verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification failed: {message}")


class WebhookPayloadError(MarketplaceError):
    """Raised when a verified webhook has an unexpected shape."""

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        self.message = message
        super().__init__(f"Malformed {event_type} payload: {message}")


# ============================================================================
# Infrastructure Errors
# ============================================================================


class PaymentProviderError(MarketplaceError):
    """Raised when the payment provider call fails or times out."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class DataIntegrityError(MarketplaceError):
    """Raised when a ledger invariant is violated after a write."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
