"""
Billing history routes - The current user's receipts, invoices and totals.

Read operations only; served from the read replica when one is configured.
"""

import math
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_billing.api.dependencies import AuthenticatedUser, get_current_user
from marketplace_billing.db.models import BillingRecord
from marketplace_billing.db.session import get_read_db
from marketplace_billing.models.api import (
    BillingHistoryResponse,
    BillingRecordResponse,
    BillingRecordStatus,
    BillingRecordType,
    BillingStatsResponse,
    Pagination,
)
from marketplace_billing.services.billing_history import (
    BillingHistoryFilter,
    BillingHistoryService,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _record_response(record: BillingRecord) -> BillingRecordResponse:
    return BillingRecordResponse(
        id=record.id,
        type=BillingRecordType(record.record_type),
        status=BillingRecordStatus(record.status),
        amount=record.amount,
        currency=record.currency,
        description=record.description,
        stripe_invoice_id=record.stripe_invoice_id,
        stripe_charge_id=record.stripe_charge_id,
        receipt_url=record.receipt_url,
        details=record.details or {},
        created_at=record.created_at,
    )


@router.get("/history", response_model=BillingHistoryResponse)
async def billing_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: BillingRecordStatus | None = Query(None),
    record_type: BillingRecordType | None = Query(None, alias="type"),
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    search: str | None = Query(None, max_length=200),
    db: AsyncSession = Depends(get_read_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> BillingHistoryResponse:
    """Newest-first billing history with filters and pagination."""
    filters = BillingHistoryFilter(
        status=status,
        record_type=record_type,
        start_date=start_date,
        end_date=end_date,
        search=search or None,
    )
    result = await BillingHistoryService(db).list_records(user.user_id, filters, page, limit)
    return BillingHistoryResponse(
        records=[_record_response(r) for r in result.records],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=result.total,
            total_pages=math.ceil(result.total / limit),
        ),
    )


@router.get("/history/{record_id}", response_model=BillingRecordResponse)
async def billing_record(
    record_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> BillingRecordResponse:
    record = await BillingHistoryService(db).get_record(user.user_id, record_id)
    return _record_response(record)


@router.get("/stats", response_model=BillingStatsResponse)
async def billing_stats(
    db: AsyncSession = Depends(get_read_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> BillingStatsResponse:
    stats = await BillingHistoryService(db).stats(user.user_id)
    return BillingStatsResponse(
        total_spent=stats.total_spent,
        total_invoices=stats.total_invoices,
        total_charges=stats.total_charges,
        total_refunds=stats.total_refunds,
    )
