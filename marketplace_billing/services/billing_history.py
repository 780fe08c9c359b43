"""
Billing History Service - Read-only queries over a user's receipts and invoices.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from uuid import UUID

from sqlalchemy import Select, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_billing.db.models import BillingRecord
from marketplace_billing.exceptions import BillingRecordNotFoundError
from marketplace_billing.models.api import BillingRecordStatus, BillingRecordType


def _escape_like(term: str) -> str:
    """Match user input literally inside an ILIKE pattern."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class BillingHistoryFilter:
    """Optional narrowing of a history listing. Dates are inclusive UTC days."""

    status: BillingRecordStatus | None = None
    record_type: BillingRecordType | None = None
    start_date: date | None = None
    end_date: date | None = None
    search: str | None = None


@dataclass(frozen=True)
class BillingHistoryPage:
    """One page of records plus the unpaged total."""

    records: list[BillingRecord]
    total: int


@dataclass(frozen=True)
class BillingStats:
    """Totals across all of a user's billing records."""

    total_spent: int
    total_invoices: int
    total_charges: int
    total_refunds: int


class BillingHistoryService:
    """Billing history for one user at a time."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _apply_filter(stmt: Select, user_id: UUID, filters: BillingHistoryFilter) -> Select:
        stmt = stmt.where(BillingRecord.user_id == user_id)
        if filters.status is not None:
            stmt = stmt.where(BillingRecord.status == filters.status.value)
        if filters.record_type is not None:
            stmt = stmt.where(BillingRecord.record_type == filters.record_type.value)
        if filters.start_date is not None:
            stmt = stmt.where(
                BillingRecord.created_at >= datetime.combine(filters.start_date, time.min, UTC)
            )
        if filters.end_date is not None:
            stmt = stmt.where(
                BillingRecord.created_at <= datetime.combine(filters.end_date, time.max, UTC)
            )
        if filters.search:
            pattern = f"%{_escape_like(filters.search)}%"
            stmt = stmt.where(
                or_(
                    BillingRecord.description.ilike(pattern, escape="\\"),
                    BillingRecord.stripe_invoice_id.ilike(pattern, escape="\\"),
                    BillingRecord.stripe_charge_id.ilike(pattern, escape="\\"),
                    BillingRecord.details["invoiceNumber"].astext.ilike(pattern, escape="\\"),
                )
            )
        return stmt

    async def list_records(
        self, user_id: UUID, filters: BillingHistoryFilter, page: int, limit: int
    ) -> BillingHistoryPage:
        """Newest-first page of records matching the filter (page is 1-based)."""
        count_stmt = self._apply_filter(
            select(func.count()).select_from(BillingRecord), user_id, filters
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            self._apply_filter(select(BillingRecord), user_id, filters)
            .order_by(BillingRecord.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        result = await self.session.execute(stmt)
        return BillingHistoryPage(records=list(result.scalars().all()), total=total)

    async def get_record(self, user_id: UUID, record_id: UUID) -> BillingRecord:
        """
        Fetch one record owned by the user.

        Raises:
            BillingRecordNotFoundError: Missing, or owned by someone else
        """
        stmt = select(BillingRecord).where(
            BillingRecord.id == record_id, BillingRecord.user_id == user_id
        )
        record = (await self.session.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise BillingRecordNotFoundError(record_id)
        return record

    async def stats(self, user_id: UUID) -> BillingStats:
        """Net spend (paid minus refunded) and counts by record type."""
        refunded = or_(
            BillingRecord.record_type == BillingRecordType.REFUND.value,
            BillingRecord.status == BillingRecordStatus.REFUNDED.value,
        )
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (BillingRecord.status == BillingRecordStatus.PAID.value, BillingRecord.amount),
                        (refunded, -BillingRecord.amount),
                        else_=0,
                    )
                ),
                0,
            ),
            func.count().filter(BillingRecord.record_type == BillingRecordType.INVOICE.value),
            func.count().filter(BillingRecord.record_type == BillingRecordType.CHARGE.value),
            func.count().filter(refunded),
        ).where(BillingRecord.user_id == user_id)
        row = (await self.session.execute(stmt)).one()
        return BillingStats(
            total_spent=int(row[0]),
            total_invoices=int(row[1]),
            total_charges=int(row[2]),
            total_refunds=int(row[3]),
        )
