"""
Payout Issuer - Turns a creator's withdrawable balance into a Stripe transfer.

NO DICTIONARIES - All operations use strongly typed domain models.

The balance row is locked (SELECT ... FOR UPDATE) for the whole
check-insert-transfer-commit sequence, so concurrent requests for one creator
serialize and can never spend the same pending balance twice.

Accounting rule: pending_earnings is debited only when the transfer is
accepted. A provider failure is recorded as a failed payout row that commits
with the balance untouched. Anything else rolls the whole attempt back.
"""

import time
from uuid import UUID

from structlog import get_logger

from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.models import CreatorEarnings, Payout, utc_now
from marketplace_billing.exceptions import (
    BusinessRuleError,
    GatewayAccountNotConnectedError,
    InsufficientBalanceError,
    InvalidPayoutAmountError,
    MinimumNotMetError,
    NoEarningsAccountError,
    PaymentProviderError,
    PayoutsNotEnabledError,
)
from marketplace_billing.models.api import PayoutStatus
from marketplace_billing.models.domain import EarningsData, PayoutData, PayoutIntent, PayoutOutcome
from marketplace_billing.observability.metrics import metrics
from marketplace_billing.observability.tracing import trace_operation
from marketplace_billing.services.payment_gateway import (
    GatewayAccount,
    PaymentGateway,
    TransferRequest,
)

logger = get_logger(__name__)


def earnings_to_domain(earnings: CreatorEarnings) -> EarningsData:
    """Convert ORM earnings row to an immutable snapshot."""
    return EarningsData(
        user_id=earnings.user_id,
        total_earnings=earnings.total_earnings,
        pending_earnings=earnings.pending_earnings,
        lifetime_sales=earnings.lifetime_sales,
        stripe_account_id=earnings.stripe_account_id,
        last_payout_at=earnings.last_payout_at,
    )


def payout_to_domain(payout: Payout) -> PayoutData:
    """Convert ORM payout row to domain model."""
    return PayoutData(
        payout_id=payout.id,
        user_id=payout.user_id,
        amount=payout.amount,
        status=PayoutStatus(payout.status),
        stripe_transfer_id=payout.stripe_transfer_id,
        stripe_account_id=payout.stripe_account_id,
        failure_reason=payout.failure_reason,
        created_at=payout.created_at,
        completed_at=payout.completed_at,
    )


class PayoutService:
    """Creator payouts and Stripe Connect onboarding."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        *,
        minimum_payout_minor: int,
        currency: str,
        frontend_url: str,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.minimum_payout_minor = minimum_payout_minor
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")

    def _validate(
        self, earnings: CreatorEarnings | None, intent: PayoutIntent
    ) -> tuple[CreatorEarnings, str]:
        """
        Apply the payout preconditions in order, failing on the first.

        Returns:
            The balance row and the connected account id to pay into.
        """
        if earnings is None:
            raise NoEarningsAccountError(intent.user_id)
        if not earnings.stripe_account_id:
            raise GatewayAccountNotConnectedError(intent.user_id)
        if earnings.pending_earnings < self.minimum_payout_minor:
            raise MinimumNotMetError(earnings.pending_earnings, self.minimum_payout_minor)
        if intent.amount < self.minimum_payout_minor:
            raise InvalidPayoutAmountError(intent.amount, self.minimum_payout_minor)
        if intent.amount > earnings.pending_earnings:
            raise InsufficientBalanceError(earnings.pending_earnings, intent.amount)
        return earnings, earnings.stripe_account_id

    async def request_payout(self, intent: PayoutIntent) -> PayoutOutcome:
        """
        Issue one payout.

        Returns:
            PayoutOutcome whose payout is either completed (balance debited) or
            failed (balance unchanged). Both are committed.

        Raises:
            BusinessRuleError: A precondition failed; nothing was written
            Exception: Any non-provider failure, after rollback
        """
        started = time.perf_counter()
        with trace_operation(
            "payout_request", user_id=intent.user_id, amount_minor=intent.amount
        ) as span:
            try:
                # Cheap unlocked pre-check, then the authoritative locked check
                self._validate(await self.ledger.find_earnings(intent.user_id), intent)
                earnings, account_id = self._validate(
                    await self.ledger.lock_earnings(intent.user_id), intent
                )

                payout = await self._issue(earnings, account_id, intent)
                await self.ledger.commit()
            except BusinessRuleError as exc:
                await self.ledger.rollback()
                metrics.record_payout_rejection(exc.code)
                logger.info(
                    "payout_rejected",
                    user_id=str(intent.user_id),
                    amount_minor=intent.amount,
                    code=exc.code,
                    reason=exc.message,
                )
                raise
            except Exception:
                await self.ledger.rollback()
                metrics.record_error("payout_unexpected", "request_payout")
                raise

            outcome = PayoutOutcome(
                payout=payout_to_domain(payout),
                remaining_balance=earnings.pending_earnings,
            )
            span.set_attribute("payout.status", outcome.payout.status.value)
            metrics.record_payout(
                outcome.payout.status.value, intent.amount, time.perf_counter() - started
            )
            return outcome

    async def _issue(
        self, earnings: CreatorEarnings, account_id: str, intent: PayoutIntent
    ) -> Payout:
        """Run the live account check and transfer against a locked balance row."""
        account: GatewayAccount | None = None
        lookup_error: PaymentProviderError | None = None
        try:
            account = await self.gateway.retrieve_account(account_id)
        except PaymentProviderError as exc:
            lookup_error = exc

        if account is not None and not account.payouts_enabled:
            raise PayoutsNotEnabledError(account_id)

        payout = await self.ledger.add_payout(
            user_id=intent.user_id,
            amount=intent.amount,
            currency=self.currency,
            stripe_account_id=account_id,
        )

        if lookup_error is not None:
            logger.error(
                "payout_account_lookup_failed",
                user_id=str(intent.user_id),
                payout_id=str(payout.id),
                error=lookup_error.message,
            )
            await self.ledger.fail_payout(payout, lookup_error.message)
            return payout

        try:
            transfer = await self.gateway.create_transfer(
                TransferRequest(
                    amount_minor=intent.amount,
                    currency=self.currency,
                    destination_account_id=account_id,
                    idempotency_key=f"payout_{payout.id}",
                    description="Marketplace creator payout",
                    metadata_user_id=str(intent.user_id),
                    metadata_payout_id=str(payout.id),
                )
            )
        except PaymentProviderError as exc:
            logger.error(
                "payout_transfer_failed",
                user_id=str(intent.user_id),
                payout_id=str(payout.id),
                amount_minor=intent.amount,
                error=exc.message,
            )
            await self.ledger.fail_payout(payout, exc.message)
            return payout

        completed_at = utc_now()
        await self.ledger.complete_payout(payout, transfer.transfer_id, completed_at)
        await self.ledger.debit_earnings(earnings, intent.amount, completed_at)
        logger.info(
            "payout_completed",
            user_id=str(intent.user_id),
            payout_id=str(payout.id),
            transfer_id=transfer.transfer_id,
            amount_minor=intent.amount,
            remaining_balance=earnings.pending_earnings,
        )
        return payout

    # ========================================================================
    # Stripe Connect
    # ========================================================================

    async def get_connect_status(
        self, user_id: UUID
    ) -> tuple[EarningsData | None, GatewayAccount | None]:
        """Balance snapshot plus live account flags, when an account is connected."""
        earnings = await self.ledger.find_earnings(user_id)
        if earnings is None or not earnings.stripe_account_id:
            return (earnings_to_domain(earnings) if earnings else None), None

        try:
            account = await self.gateway.retrieve_account(earnings.stripe_account_id)
        except PaymentProviderError as exc:
            logger.warning(
                "connect_account_lookup_failed",
                user_id=str(user_id),
                stripe_account_id=earnings.stripe_account_id,
                error=exc.message,
            )
            account = None
        return earnings_to_domain(earnings), account

    async def connect_account(self, user_id: UUID, email: str | None) -> tuple[str, str]:
        """
        Ensure the creator has a connected account and return an onboarding link.

        The account id is committed before the link is requested so a failed
        link call never orphans a freshly created account.

        Returns:
            (account_id, onboarding_url)
        """
        try:
            earnings = await self.ledger.lock_or_create_earnings(user_id)
            account_id = earnings.stripe_account_id
            if not account_id:
                account_id = await self.gateway.create_connected_account(str(user_id), email)
                await self.ledger.set_stripe_account(earnings, account_id)
                logger.info(
                    "connect_account_created", user_id=str(user_id), stripe_account_id=account_id
                )
            await self.ledger.commit()
        except Exception:
            await self.ledger.rollback()
            raise

        url = await self.gateway.create_account_link(
            account_id,
            refresh_url=f"{self.frontend_url}/creator/payouts?refresh=true",
            return_url=f"{self.frontend_url}/creator/payouts?success=true",
        )
        return account_id, url

    async def payout_history(
        self, user_id: UUID, limit: int, offset: int
    ) -> tuple[list[PayoutData], EarningsData | None]:
        payouts = await self.ledger.list_payouts(user_id, limit, offset)
        earnings = await self.ledger.find_earnings(user_id)
        return (
            [payout_to_domain(p) for p in payouts],
            earnings_to_domain(earnings) if earnings else None,
        )
