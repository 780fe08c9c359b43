"""
Creator payout routes - Stripe Connect onboarding, payouts and history.

All endpoints require a bearer token.
"""

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_billing.api.dependencies import (
    AuthenticatedUser,
    enforce_payout_rate_limit,
    get_current_user,
    get_payment_gateway,
)
from marketplace_billing.config import settings
from marketplace_billing.db.ledger import LedgerStore
from marketplace_billing.db.session import get_read_db, get_write_db
from marketplace_billing.models.api import (
    ConnectAccountResponse,
    ConnectAccountStatus,
    ConnectStatusResponse,
    EarningsSummary,
    PayoutFailedResponse,
    PayoutHistoryResponse,
    PayoutRequest,
    PayoutResponse,
    PayoutResultResponse,
)
from marketplace_billing.models.domain import EarningsData, PayoutData, PayoutIntent
from marketplace_billing.services.payment_gateway import PaymentGateway
from marketplace_billing.services.payouts import PayoutService

router = APIRouter(prefix="/api/payouts", tags=["payouts"])


def _payout_service(db: AsyncSession, gateway: PaymentGateway) -> PayoutService:
    return PayoutService(
        LedgerStore(db),
        gateway,
        minimum_payout_minor=settings.minimum_payout_minor,
        currency=settings.currency,
        frontend_url=settings.frontend_url,
    )


def payout_response(payout: PayoutData) -> PayoutResponse:
    return PayoutResponse(
        id=payout.payout_id,
        amount=payout.amount,
        status=payout.status,
        stripe_transfer_id=payout.stripe_transfer_id,
        stripe_account_id=payout.stripe_account_id,
        failure_reason=payout.failure_reason,
        created_at=payout.created_at,
        completed_at=payout.completed_at,
    )


def earnings_summary(earnings: EarningsData) -> EarningsSummary:
    return EarningsSummary(
        total_earnings=earnings.total_earnings,
        pending_earnings=earnings.pending_earnings,
        lifetime_sales=earnings.lifetime_sales,
        stripe_account_id=earnings.stripe_account_id,
        last_payout_at=earnings.last_payout_at,
    )


@router.get("/connect-status", response_model=ConnectStatusResponse)
async def get_connect_status(
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectStatusResponse:
    """Whether the creator has a connected account and what it can do."""
    earnings, account = await _payout_service(db, gateway).get_connect_status(user.user_id)
    if earnings is None:
        return ConnectStatusResponse(connected=False)

    return ConnectStatusResponse(
        connected=earnings.stripe_account_id is not None,
        stripe_account_id=earnings.stripe_account_id,
        account_status=(
            ConnectAccountStatus(
                charges_enabled=account.charges_enabled,
                payouts_enabled=account.payouts_enabled,
                details_submitted=account.details_submitted,
            )
            if account is not None
            else None
        ),
        pending_earnings=earnings.pending_earnings,
        total_earnings=earnings.total_earnings,
    )


@router.post("/connect-account", response_model=ConnectAccountResponse)
async def connect_account(
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectAccountResponse:
    """Create (once) an Express account and return a fresh onboarding link."""
    account_id, url = await _payout_service(db, gateway).connect_account(
        user.user_id, user.email
    )
    return ConnectAccountResponse(url=url, account_id=account_id)


@router.post(
    "/request-payout",
    response_model=PayoutResultResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": PayoutFailedResponse},
        status.HTTP_429_TOO_MANY_REQUESTS: {"description": "Payout rate limit exceeded"},
    },
)
async def request_payout(
    body: PayoutRequest,
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(enforce_payout_rate_limit),
) -> PayoutResultResponse | JSONResponse:
    """
    Transfer part of the creator's pending balance to their connected account.

    A transfer the provider rejects is still recorded; the response is a 400
    stating the balance was not affected.
    """
    outcome = await _payout_service(db, gateway).request_payout(
        PayoutIntent(user_id=user.user_id, amount=body.amount)
    )

    if not outcome.succeeded:
        failed = PayoutFailedResponse(
            message="Payout failed. Your balance has not been affected.",
            failure_reason=outcome.payout.failure_reason,
            payout=payout_response(outcome.payout),
            remaining_balance=outcome.remaining_balance,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=failed.model_dump(mode="json", by_alias=True),
        )

    return PayoutResultResponse(
        message="Payout initiated successfully",
        payout=payout_response(outcome.payout),
        remaining_balance=outcome.remaining_balance,
    )


@router.get("/history", response_model=PayoutHistoryResponse)
async def payout_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
) -> PayoutHistoryResponse:
    payouts, earnings = await _payout_service(db, gateway).payout_history(
        user.user_id, limit, offset
    )
    return PayoutHistoryResponse(
        payouts=[payout_response(p) for p in payouts],
        earnings=earnings_summary(earnings) if earnings is not None else None,
    )
