"""
Expense Lifecycle - Expense Report Service

Draft creation, line-item editing, read access and the manager review queue.
Status changes go through ``WorkflowService``.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.audit import AuditEvent
from app.models.employee import Employee, EmployeeRole
from app.models.expense import ExpenseItem, ExpenseReport, ReportStatus
from app.schemas.auth import CallerClaim
from app.schemas.expense import ExpenseItemInput, ExpenseReportCreate
from app.services.audit_service import AuditService
from app.services.policy_engine import (
    ItemSnapshot,
    PolicyRules,
    ReceiptSnapshot,
    ReportSnapshot,
    ValidationResult,
    validate_report,
)
from app.services.report_store import (
    ReportStore,
    apply_receipts,
    build_item,
    item_state,
    report_snapshot,
    report_state,
)
from app.services.workflow_service import WorkflowService
from app.utils.error_handling import (
    AppException,
    AuthorizationException,
    ConflictException,
    ErrorCode,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({ReportStatus.DRAFT, ReportStatus.NEEDS_CHANGES})


def _input_snapshot(data: ExpenseItemInput) -> ItemSnapshot:
    return ItemSnapshot(
        expense_date=data.expense_date,
        category=data.category,
        amount_cents=data.amount_cents,
        reimbursable=data.reimbursable,
        distance_miles=data.distance_miles,
        receipts=tuple(
            ReceiptSnapshot(
                file_key=receipt.file_key,
                file_name=receipt.file_name,
                mime_type=receipt.mime_type,
                size_bytes=receipt.size_bytes,
            )
            for receipt in data.receipts
        ),
    )


class ReportService:
    """Service for expense report drafts and queries."""

    def __init__(self, db: AsyncSession, rules: Optional[PolicyRules] = None):
        self.db = db
        self.store = ReportStore(db)
        self.audit = AuditService(db)
        self.rules = rules or PolicyRules.from_settings(settings)

    # ===========================================
    # DRAFTS
    # ===========================================

    async def create_report(self, caller: CallerClaim, data: ExpenseReportCreate) -> ExpenseReport:
        """
        Create a draft report owned by the caller.

        Structural rules are checked up front; policy findings that the owner
        can still fix (missing receipts, caps) wait until submission.
        """
        owner = await self.db.get(Employee, caller.employee_id)
        if owner is None:
            raise AuthorizationException("Caller is not in the employee directory")

        snapshot = ReportSnapshot(
            reporting_period_start=data.reporting_period_start,
            reporting_period_end=data.reporting_period_end,
            currency=data.currency,
            items=tuple(_input_snapshot(item) for item in data.items),
        )
        result = validate_report(snapshot, [], [], self.rules, require_complete=False)
        if not result.is_valid:
            raise ValidationException(message="Expense report is invalid", errors=result.errors)

        report_id = uuid.uuid4()
        report = ExpenseReport(
            id=report_id,
            employee_id=owner.id,
            reporting_period_start=data.reporting_period_start,
            reporting_period_end=data.reporting_period_end,
            currency=data.currency,
            status=ReportStatus.DRAFT,
            items=[
                build_item(item, position, caller.employee_id)
                for position, item in enumerate(data.items)
            ],
            approvals=[],
        )
        try:
            self.store.add(report)
            await self.db.flush()

            await self.audit.record(
                entity_type="expense_report",
                entity_id=report.id,
                event_type=AuditEvent.REPORT_CREATED,
                actor_id=caller.employee_id,
                new_value={
                    **report_state(report),
                    "reporting_period_start": report.reporting_period_start,
                    "reporting_period_end": report.reporting_period_end,
                    "currency": report.currency,
                    "item_count": len(report.items),
                },
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
            )
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception as exc:
            await self.db.rollback()
            await self._record_failure(caller, report_id, AuditEvent.REPORT_CREATED, exc)
            raise

        logger.info(f"Created draft report {report.id} for {owner.id} with {len(report.items)} item(s)")
        return report

    async def add_item(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        data: ExpenseItemInput,
        expected_version: int,
    ) -> ExpenseReport:
        report = await self._load_editable(caller, report_id, expected_version)
        position = max((item.position for item in report.items), default=-1) + 1
        item = build_item(data, position, caller.employee_id)
        report.items.append(item)

        return await self._save_item_change(
            caller, report, expected_version, AuditEvent.ITEM_ADDED, None, item
        )

    async def update_item(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        item_id: uuid.UUID,
        data: ExpenseItemInput,
        expected_version: int,
    ) -> ExpenseReport:
        report = await self._load_editable(caller, report_id, expected_version)
        item = self._find_item(report, item_id)
        before = item_state(item)

        item.expense_date = data.expense_date
        item.category = data.category
        item.amount_cents = data.amount_cents
        item.reimbursable = data.reimbursable
        item.payment_method = data.payment_method
        item.description = data.description
        item.attendees = data.attendees
        item.location = data.location
        item.distance_miles = data.distance_miles
        item.gl_account_code = data.gl_account_code
        item.is_policy_exception = False
        item.policy_exception_reasons = None
        apply_receipts(item, data.receipts, caller.employee_id)

        return await self._save_item_change(
            caller, report, expected_version, AuditEvent.ITEM_UPDATED, before, item
        )

    async def remove_item(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        item_id: uuid.UUID,
        expected_version: int,
    ) -> ExpenseReport:
        report = await self._load_editable(caller, report_id, expected_version)
        item = self._find_item(report, item_id)
        before = item_state(item)
        report.items.remove(item)

        return await self._save_item_change(
            caller, report, expected_version, AuditEvent.ITEM_REMOVED, before, None
        )

    async def _load_editable(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        expected_version: int,
    ) -> ExpenseReport:
        report = await self.store.get(report_id)
        if caller.employee_id != report.employee_id:
            raise AuthorizationException(
                "Only the report owner can edit this report",
                required_permission="owner",
                code=ErrorCode.NOT_OWNER,
            )
        self.store.ensure_version(report, expected_version)
        if report.status not in EDITABLE_STATUSES:
            raise ConflictException(
                f"Report items cannot be changed while the report is '{report.status.value}'",
                resource_type="ExpenseReport",
                code=ErrorCode.CANNOT_MODIFY,
                details={"status": report.status.value},
            )
        return report

    @staticmethod
    def _find_item(report: ExpenseReport, item_id: uuid.UUID) -> ExpenseItem:
        for item in report.items:
            if item.id == item_id:
                return item
        raise NotFoundException("Expense item", item_id, code=ErrorCode.ITEM_NOT_FOUND)

    async def _save_item_change(
        self,
        caller: CallerClaim,
        report: ExpenseReport,
        expected_version: int,
        event_type: str,
        before: Optional[dict],
        item: Optional[ExpenseItem],
    ) -> ExpenseReport:
        result = validate_report(report_snapshot(report), [], [], self.rules, require_complete=False)
        if not result.is_valid:
            await self.db.rollback()
            raise ValidationException(message="Expense item is invalid", errors=result.errors)

        report_id = report.id
        report_before = report_state(report)
        try:
            await self.store.save(report, expected_version)
            await self.audit.record(
                entity_type="expense_report",
                entity_id=report_id,
                event_type=event_type,
                actor_id=caller.employee_id,
                old_value={"report": report_before, "item": before} if before else {"report": report_before},
                new_value={"report": report_state(report), "item": item_state(item) if item else None},
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
            )
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception as exc:
            await self.db.rollback()
            await self._record_failure(caller, report_id, event_type, exc)
            raise

        logger.info(f"{event_type} on report {report.id} (v{report.version})")
        return report

    async def _record_failure(
        self, caller: CallerClaim, report_id: uuid.UUID, operation: str, exc: Exception
    ) -> None:
        """Audit an unexpected draft mutation failure in its own transaction."""
        try:
            await self.audit.record(
                entity_type="expense_report",
                entity_id=report_id,
                event_type=AuditEvent.MUTATION_FAILED,
                actor_id=caller.employee_id,
                new_value={"operation": operation, "error": type(exc).__name__, "message": str(exc)},
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception(f"Could not audit failed {operation} on report {report_id}")
        logger.error(f"Unexpected failure during {operation} on report {report_id}: {exc}")

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_report(self, caller: CallerClaim, report_id: uuid.UUID) -> ExpenseReport:
        """Owners see their own reports; reviewer roles see any report."""
        report = await self.store.get(report_id)
        if caller.employee_id != report.employee_id and not caller.is_reviewer:
            raise AuthorizationException("You do not have access to this report")
        return report

    async def list_reports(
        self,
        caller: CallerClaim,
        status: Optional[ReportStatus] = None,
    ) -> List[ExpenseReport]:
        """The caller's own reports, newest period first."""
        query = select(ExpenseReport).where(ExpenseReport.employee_id == caller.employee_id)
        if status is not None:
            query = query.where(ExpenseReport.status == status)
        result = await self.db.execute(
            query.order_by(ExpenseReport.reporting_period_start.desc(), ExpenseReport.created_at.desc())
        )
        return list(result.scalars().all())

    async def evaluate_policy(self, caller: CallerClaim, report_id: uuid.UUID) -> ValidationResult:
        """Policy evaluation of the current contents, without side effects."""
        report = await self.get_report(caller, report_id)
        return await WorkflowService(self.db, self.rules).evaluate(report)

    async def manager_queue(self, caller: CallerClaim) -> List[ExpenseReport]:
        """Submitted reports owned by the caller's direct reports, oldest first."""
        if caller.role != EmployeeRole.MANAGER:
            raise AuthorizationException(
                "Manager role required",
                required_permission=EmployeeRole.MANAGER.value,
                code=ErrorCode.ROLE_REQUIRED,
            )
        result = await self.db.execute(
            select(ExpenseReport)
            .join(Employee, Employee.id == ExpenseReport.employee_id)
            .where(Employee.manager_id == caller.employee_id)
            .where(ExpenseReport.status == ReportStatus.SUBMITTED)
            .order_by(ExpenseReport.submitted_at, ExpenseReport.id)
        )
        return list(result.scalars().all())
