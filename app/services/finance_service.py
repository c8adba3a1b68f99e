"""
Expense Lifecycle - Finance Service

Finance finalization and batch management.

Finalization is all-or-nothing: every requested report moves to
``finance_finalized`` and the new batch is created in the same transaction,
or nothing changes. Export to the ledger happens after commit, either inline
or through Celery depending on ``settings.export_dispatch``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.employee import EmployeeRole
from app.models.expense import ExpenseReport
from app.models.ledger import NetsuiteBatch
from app.schemas.auth import CallerClaim
from app.schemas.expense import FinalizeRequest, FinanceRejectRequest
from app.services.batch_export_service import BatchExportService, ExportRetryConfig
from app.services.ledger_client import LedgerClient
from app.services.workflow_service import TransitionRequest, WorkflowAction, WorkflowService
from app.utils.error_handling import (
    AppException,
    AuthorizationException,
    ErrorCode,
    ExternalServiceException,
    ValidationException,
)

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    reports: List[ExpenseReport] = field(default_factory=list)
    batch: Optional[NetsuiteBatch] = None


class FinanceService:
    """Service for finance reviewers."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerClient,
        retry_config: Optional[ExportRetryConfig] = None,
        dispatch: Optional[str] = None,
    ):
        self.db = db
        self.workflow = WorkflowService(db)
        self.exporter = BatchExportService(db, ledger, retry_config)
        self.dispatch = dispatch or settings.export_dispatch

    @staticmethod
    def _require_finance(caller: CallerClaim) -> None:
        if caller.role != EmployeeRole.FINANCE:
            raise AuthorizationException(
                "Finance role required",
                required_permission=EmployeeRole.FINANCE.value,
                code=ErrorCode.ROLE_REQUIRED,
            )

    async def finalize(self, caller: CallerClaim, request: FinalizeRequest) -> FinalizeResult:
        """Finalize the given reports, batch every unbatched finalized report and dispatch export."""
        self._require_finance(caller)

        report_ids = list(dict.fromkeys(request.report_ids))
        missing = [report_id for report_id in report_ids if report_id not in request.versions]
        if missing:
            raise ValidationException(
                message="A version is required for every report being finalized",
                errors={f"versions.{report_id}": ["Version is required"] for report_id in missing},
                field="versions",
            )

        result = FinalizeResult()
        current: Optional[uuid.UUID] = None
        try:
            for report_id in report_ids:
                current = report_id
                report = await self.workflow.apply(
                    caller,
                    TransitionRequest(
                        report_id=report_id,
                        action=WorkflowAction.FINANCE_FINALIZE,
                        expected_version=request.versions[report_id],
                    ),
                )
                result.reports.append(report)

            current = None
            result.batch = await self.exporter.create_batch(
                caller.employee_id, caller.ip_address, caller.user_agent
            )
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception as exc:
            await self.db.rollback()
            if current is not None:
                await self.workflow.record_failure(caller, current, WorkflowAction.FINANCE_FINALIZE.value, exc)
            else:
                logger.exception("Batch creation failed during finalization")
            raise

        logger.info(
            f"Finance {caller.employee_id} finalized {len(result.reports)} report(s); "
            f"batch {result.batch.batch_reference if result.batch else 'none'}"
        )

        if result.batch is not None:
            result.batch = await self._dispatch_export(result.batch)
        reloaded = {
            report.id: report
            for report in await self.workflow.store.get_many(report_ids)
        }
        result.reports = [reloaded[report_id] for report_id in report_ids]
        return result

    async def _dispatch_export(self, batch: NetsuiteBatch) -> NetsuiteBatch:
        if self.dispatch == "celery":
            from app.celery_app import celery_app

            celery_app.send_task("app.tasks.export_tasks.export_batch_task", args=[str(batch.id)])
            logger.info(f"Queued export of batch {batch.batch_reference}")
            return batch

        try:
            return await self.exporter.export_batch(batch.id)
        except ExternalServiceException as exc:
            # Failure is recorded on the batch; finalization itself stands.
            logger.warning(f"Inline export of batch {batch.batch_reference} failed: {exc.message}")
            return await self.exporter.get_batch(batch.id)

    async def reject_report(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        request: FinanceRejectRequest,
    ) -> ExpenseReport:
        return await self.workflow.transition(
            caller,
            TransitionRequest(
                report_id=report_id,
                action=WorkflowAction.FINANCE_REJECT,
                expected_version=request.version,
                comment=request.comment,
            ),
        )

    # ===========================================
    # BATCHES
    # ===========================================

    async def list_batches(self, caller: CallerClaim, limit: int = 50) -> List[Dict[str, Any]]:
        self._require_finance(caller)
        return await self.exporter.list_batches(limit=limit)

    async def get_batch(self, caller: CallerClaim, batch_id: uuid.UUID) -> NetsuiteBatch:
        self._require_finance(caller)
        return await self.exporter.get_batch(batch_id)

    async def export_batch(self, caller: CallerClaim, batch_id: uuid.UUID) -> NetsuiteBatch:
        self._require_finance(caller)
        return await self.exporter.export_batch(batch_id)

    async def release_batch(self, caller: CallerClaim, batch_id: uuid.UUID) -> NetsuiteBatch:
        self._require_finance(caller)
        return await self.exporter.release_failed_batch(
            batch_id, caller.employee_id, caller.ip_address, caller.user_agent
        )
