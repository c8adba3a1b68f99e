"""
Expense Lifecycle - Report Store

Loads and persists expense reports under optimistic concurrency control.

The store never retries: a stale ``expected_version`` (or a concurrent writer
detected by the versioned UPDATE) is reported as a conflict and the caller
decides whether to reload.
"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.models.base import utcnow
from app.models.employee import Employee
from app.models.expense import ExpenseItem, ExpenseReport, Receipt
from app.models.policy import MileageRate, PolicyCap
from app.services.policy_engine import (
    CapSnapshot,
    ItemSnapshot,
    MileageRateSnapshot,
    ReceiptSnapshot,
    ReportSnapshot,
)
from app.utils.error_handling import ErrorCode, NotFoundException, VersionConflictException

logger = logging.getLogger(__name__)


# ===========================================
# SNAPSHOTS / SERIALIZATION
# ===========================================

def report_snapshot(report: ExpenseReport) -> ReportSnapshot:
    """Immutable view of a report for the policy engine."""
    return ReportSnapshot(
        reporting_period_start=report.reporting_period_start,
        reporting_period_end=report.reporting_period_end,
        currency=report.currency,
        items=tuple(item_snapshot(item) for item in report.items),
    )


def item_snapshot(item: ExpenseItem) -> ItemSnapshot:
    return ItemSnapshot(
        expense_date=item.expense_date,
        category=item.category,
        amount_cents=item.amount_cents,
        reimbursable=item.reimbursable,
        distance_miles=item.distance_miles,
        receipts=tuple(
            ReceiptSnapshot(
                file_key=receipt.file_key,
                file_name=receipt.file_name,
                mime_type=receipt.mime_type,
                size_bytes=receipt.size_bytes,
            )
            for receipt in item.receipts
        ),
    )


def report_state(report: ExpenseReport) -> Dict[str, Any]:
    """Fields recorded in audit snapshots for a report."""
    return {
        "status": report.status.value,
        "version": report.version,
        "total_amount_cents": report.total_amount_cents,
        "total_reimbursable_cents": report.total_reimbursable_cents,
        "export_batch_id": str(report.export_batch_id) if report.export_batch_id else None,
    }


def item_state(item: ExpenseItem) -> Dict[str, Any]:
    return {
        "item_id": str(item.id) if item.id else None,
        "position": item.position,
        "expense_date": item.expense_date,
        "category": item.category.value,
        "amount_cents": item.amount_cents,
        "reimbursable": item.reimbursable,
        "distance_miles": item.distance_miles,
        "gl_account_code": item.gl_account_code,
        "receipt_count": len(item.receipts),
    }


def build_item(data, position: int, uploaded_by: Optional[uuid.UUID]) -> ExpenseItem:
    """Create an ``ExpenseItem`` (with receipts) from an item input schema."""
    item = ExpenseItem(
        position=position,
        expense_date=data.expense_date,
        category=data.category,
        amount_cents=data.amount_cents,
        reimbursable=data.reimbursable,
        payment_method=data.payment_method,
        description=data.description,
        attendees=data.attendees,
        location=data.location,
        distance_miles=data.distance_miles,
        gl_account_code=data.gl_account_code,
        is_policy_exception=False,
        receipts=[],
    )
    apply_receipts(item, data.receipts, uploaded_by)
    return item


def apply_receipts(item: ExpenseItem, receipts, uploaded_by: Optional[uuid.UUID]) -> None:
    item.receipts = [
        Receipt(
            file_key=receipt.file_key,
            file_name=receipt.file_name,
            mime_type=receipt.mime_type,
            size_bytes=receipt.size_bytes,
            uploaded_by=uploaded_by,
        )
        for receipt in receipts
    ]


# ===========================================
# STORE
# ===========================================

class ReportStore:
    """Data access for expense reports with version checks."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, report_id: uuid.UUID) -> ExpenseReport:
        """Fetch a report with items, receipts and approvals, refreshed from the database."""
        result = await self.db.execute(
            select(ExpenseReport)
            .where(ExpenseReport.id == report_id)
            .execution_options(populate_existing=True)
        )
        report = result.scalar_one_or_none()
        if report is None:
            raise NotFoundException("Expense report", report_id, code=ErrorCode.REPORT_NOT_FOUND)
        return report

    async def get_many(self, report_ids: List[uuid.UUID]) -> List[ExpenseReport]:
        result = await self.db.execute(
            select(ExpenseReport)
            .where(ExpenseReport.id.in_(report_ids))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_employee(self, employee_id: uuid.UUID) -> Optional[Employee]:
        return await self.db.get(Employee, employee_id)

    @staticmethod
    def ensure_version(report: ExpenseReport, expected_version: int) -> None:
        """Reject the call when the caller's version token is stale."""
        if report.version != expected_version:
            logger.info(
                f"Version conflict on report {report.id}: expected {expected_version}, "
                f"current {report.version}"
            )
            raise VersionConflictException(
                "ExpenseReport", report.id, expected_version, current_version=report.version
            )

    def add(self, report: ExpenseReport) -> None:
        report.recalculate_totals()
        self.db.add(report)

    async def save(self, report: ExpenseReport, expected_version: Optional[int] = None) -> None:
        """
        Flush pending changes to ``report`` and its items.

        Totals are recomputed first and ``updated_at`` is touched so the
        versioned UPDATE is always emitted; a concurrent writer that got there
        first turns into ``VersionConflictException``.
        """
        report.recalculate_totals()
        report.updated_at = utcnow()
        # Rollback expires the instance; only these locals are safe afterwards
        report_id = report.id
        read_version = report.version
        try:
            await self.db.flush()
        except StaleDataError as exc:
            await self.db.rollback()
            logger.info(f"Concurrent update detected on report {report_id}")
            raise VersionConflictException(
                "ExpenseReport", report_id, expected_version if expected_version is not None else read_version
            ) from exc

    async def load_policy_context(
        self, report: ExpenseReport
    ) -> Tuple[List[CapSnapshot], List[MileageRateSnapshot]]:
        """Caps and mileage rates that can apply to any date on the report."""
        dates: List[date] = [report.reporting_period_start, report.reporting_period_end]
        dates.extend(item.expense_date for item in report.items)
        start, end = min(dates), max(dates)

        cap_result = await self.db.execute(
            select(PolicyCap)
            .where(PolicyCap.active_from <= end)
            .where(or_(PolicyCap.active_to.is_(None), PolicyCap.active_to >= start))
        )
        caps = [
            CapSnapshot(
                id=cap.id,
                policy_key=cap.policy_key,
                category=cap.category,
                limit_type=cap.limit_type,
                amount_cents=cap.amount_cents,
                active_from=cap.active_from,
                active_to=cap.active_to,
            )
            for cap in cap_result.scalars().all()
        ]

        rate_result = await self.db.execute(
            select(MileageRate).where(MileageRate.effective_date <= end)
        )
        rates = [
            MileageRateSnapshot(
                effective_date=rate.effective_date,
                rate_cents_per_mile=rate.rate_cents_per_mile,
            )
            for rate in rate_result.scalars().all()
        ]
        return caps, rates
