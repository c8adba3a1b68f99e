"""
Expense Lifecycle - Batch Export Orchestrator

Groups finance-finalized reports into NetSuite batches, derives journal
lines and submits batches to the ledger.

Export of a batch goes through three short transactions:
1. claim: conditional ``pending -> submitting`` update that only one worker wins
2. ledger call: no database transaction is open while the ledger is talking
3. record: outcome written only if this worker still owns the claim

A batch that is already ``exported`` is never resubmitted. A claim left
behind by a crashed worker expires after ``export_claim_timeout_seconds`` and
the next worker resumes the same batch reference. Any attempt after the first
starts by asking the ledger whether the batch is already posted.
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.models.audit import AuditEvent
from app.models.base import utcnow
from app.models.expense import ExpenseReport, ReportStatus
from app.models.ledger import BatchStatus, JournalLine, NetsuiteBatch
from app.services.audit_service import AuditService
from app.services.ledger_client import (
    LedgerClient,
    LedgerLine,
    LedgerOutcome,
    LedgerPermanentError,
    LedgerSubmission,
    LedgerTimeoutError,
    LedgerTransientError,
)
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    ExportPermanentException,
    ExportTransientException,
    NotFoundException,
)

logger = logging.getLogger(__name__)

BATCH_ENTITY = "netsuite_batch"
REPORT_ENTITY = "expense_report"


@dataclass(frozen=True)
class ExportRetryConfig:
    """Retry and timeout behaviour for ledger calls."""
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    timeout_seconds: float = 30.0
    claim_timeout_seconds: int = 600

    @classmethod
    def from_settings(cls, settings) -> "ExportRetryConfig":
        return cls(
            max_attempts=settings.ledger_max_attempts,
            backoff_base_seconds=settings.ledger_backoff_base_seconds,
            backoff_max_seconds=settings.ledger_backoff_max_seconds,
            timeout_seconds=settings.ledger_timeout_seconds,
            claim_timeout_seconds=settings.export_claim_timeout_seconds,
        )


class ClaimLostError(Exception):
    """Another worker took over the batch while this one was exporting it."""


def generate_batch_reference() -> str:
    """Human-readable batch reference, e.g. ``EXP-20240415-3FA2C1``."""
    return f"EXP-{utcnow().strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def gl_account_for(item) -> str:
    if item.gl_account_code:
        return item.gl_account_code
    return settings.gl_account_map.get(item.category.value, settings.default_gl_account)


def journal_memo(report: ExpenseReport, item) -> str:
    owner = report.employee.full_name if report.employee else str(report.employee_id)
    memo = f"{owner} - {item.category.value} {item.expense_date.isoformat()}"
    if item.description:
        memo = f"{memo} - {item.description}"
    return memo[:500]


class BatchExportService:
    """Creates and exports ledger batches."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerClient,
        retry_config: Optional[ExportRetryConfig] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.audit = AuditService(db)
        self.retry_config = retry_config or ExportRetryConfig.from_settings(settings)

    # ===========================================
    # BATCH CREATION
    # ===========================================

    async def create_batch(
        self,
        actor_id: uuid.UUID,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[NetsuiteBatch]:
        """
        Attach every finalized, unbatched report to a new pending batch.

        Runs inside the caller's transaction and does not commit. Reports are
        attached with a conditional update, so a report picked up by a
        concurrent call is skipped instead of being batched twice. Returns
        None when nothing is eligible.
        """
        result = await self.db.execute(
            select(ExpenseReport)
            .where(ExpenseReport.status == ReportStatus.FINANCE_FINALIZED)
            .where(ExpenseReport.export_batch_id.is_(None))
            .order_by(ExpenseReport.finalized_at, ExpenseReport.id)
            .execution_options(populate_existing=True)
        )
        candidates = list(result.scalars().all())
        if not candidates:
            logger.info("No finalized reports waiting for export")
            return None

        batch = NetsuiteBatch(
            batch_reference=generate_batch_reference(),
            finalized_by=actor_id,
            finalized_at=utcnow(),
            status=BatchStatus.PENDING,
            attempt_count=0,
            submission_timed_out=False,
        )
        self.db.add(batch)
        await self.db.flush()

        attached: List[ExpenseReport] = []
        for report in candidates:
            claimed = await self.db.execute(
                update(ExpenseReport)
                .where(ExpenseReport.id == report.id)
                .where(ExpenseReport.export_batch_id.is_(None))
                .where(ExpenseReport.version == report.version)
                .values(
                    export_batch_id=batch.id,
                    version=ExpenseReport.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                attached.append(report)
            else:
                logger.info(f"Report {report.id} was batched concurrently; skipping")

        if not attached:
            await self.db.delete(batch)
            await self.db.flush()
            return None

        # Reload so versions and batch links reflect the conditional updates
        reloaded = await self.db.execute(
            select(ExpenseReport)
            .where(ExpenseReport.id.in_([report.id for report in attached]))
            .order_by(ExpenseReport.finalized_at, ExpenseReport.id)
            .execution_options(populate_existing=True)
        )
        reports = list(reloaded.scalars().all())

        line_number = 0
        for report in reports:
            department = report.employee.department if report.employee else None
            for item in report.items:
                line_number += 1
                self.db.add(
                    JournalLine(
                        batch_id=batch.id,
                        report_id=report.id,
                        expense_item_id=item.id,
                        line_number=line_number,
                        gl_account=gl_account_for(item),
                        amount_cents=item.amount_cents,
                        currency=report.currency,
                        department=department,
                        memo=journal_memo(report, item),
                        tax_code=settings.default_tax_code,
                    )
                )
        await self.db.flush()
        await self.db.refresh(batch, attribute_names=["journal_lines"])

        for report in reports:
            await self.audit.record(
                entity_type=REPORT_ENTITY,
                entity_id=report.id,
                event_type=AuditEvent.REPORT_BATCHED,
                actor_id=actor_id,
                old_value={"export_batch_id": None, "version": report.version - 1},
                new_value={"export_batch_id": str(batch.id), "version": report.version},
                ip_address=ip_address,
                user_agent=user_agent,
            )

        await self.audit.record(
            entity_type=BATCH_ENTITY,
            entity_id=batch.id,
            event_type=AuditEvent.BATCH_CREATED,
            actor_id=actor_id,
            new_value={
                "batch_reference": batch.batch_reference,
                "status": batch.status.value,
                "report_ids": [str(report.id) for report in reports],
                "line_count": line_number,
                "total_amount_cents": sum(line.amount_cents for line in batch.journal_lines),
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )

        logger.info(
            f"Created batch {batch.batch_reference} with {len(reports)} report(s) "
            f"and {line_number} journal line(s)"
        )
        return batch

    # ===========================================
    # EXPORT
    # ===========================================

    async def get_batch(self, batch_id: uuid.UUID) -> NetsuiteBatch:
        result = await self.db.execute(
            select(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundException("Batch", batch_id, code=ErrorCode.BATCH_NOT_FOUND)
        return batch

    async def export_batch(self, batch_id: uuid.UUID) -> NetsuiteBatch:
        """
        Export one batch to the ledger.

        Returns the batch unchanged when it is already exported or currently
        owned by another worker. Raises ``ExportPermanentException`` or
        ``ExportTransientException`` after the failure has been recorded.
        """
        batch = await self.get_batch(batch_id)
        if batch.status == BatchStatus.EXPORTED:
            logger.info(f"Batch {batch.batch_reference} already exported; nothing to do")
            return batch
        if batch.status == BatchStatus.FAILED:
            raise ConflictException(
                f"Batch {batch.batch_reference} failed and needs manual remediation",
                resource_type="Batch",
                code=ErrorCode.BATCH_BUSY,
                details={"status": batch.status.value, "last_error": batch.last_error},
            )

        claim_token = await self._claim(batch_id)
        if claim_token is None:
            logger.info(f"Batch {batch.batch_reference} is claimed by another worker")
            return await self.get_batch(batch_id)

        batch = await self.get_batch(batch_id)
        submission = LedgerSubmission(
            batch_reference=batch.batch_reference,
            lines=tuple(
                LedgerLine(
                    line_number=line.line_number,
                    gl_account=line.gl_account,
                    amount_cents=line.amount_cents,
                    currency=line.currency,
                    department=line.department,
                    memo=line.memo,
                    tax_code=line.tax_code,
                )
                for line in batch.journal_lines
            ),
        )

        try:
            outcome = await self._submit_with_retry(batch_id, claim_token, submission)
        except ClaimLostError:
            logger.warning(f"Lost claim on batch {submission.batch_reference}; leaving it to the new owner")
            return await self.get_batch(batch_id)
        except LedgerPermanentError as exc:
            await self._record_failure(batch_id, claim_token, exc, permanent=True)
            raise ExportPermanentException(exc.message, raw_response=exc.raw) from exc
        except LedgerTransientError as exc:
            await self._record_failure(batch_id, claim_token, exc, permanent=False)
            raise ExportTransientException(
                exc.message, attempts=self.retry_config.max_attempts, original_error=exc
            ) from exc
        except Exception as exc:
            await self._release_after_error(batch_id, claim_token, exc)
            raise

        return await self._record_success(batch_id, claim_token, outcome)

    async def export_pending_batches(self) -> Dict[str, Any]:
        """Resume every pending batch and every expired claim."""
        stale_before = utcnow() - timedelta(seconds=self.retry_config.claim_timeout_seconds)
        result = await self.db.execute(
            select(NetsuiteBatch.id)
            .where(
                or_(
                    NetsuiteBatch.status == BatchStatus.PENDING,
                    and_(
                        NetsuiteBatch.status == BatchStatus.SUBMITTING,
                        NetsuiteBatch.claimed_at < stale_before,
                    ),
                )
            )
            .order_by(NetsuiteBatch.finalized_at)
        )
        batch_ids = list(result.scalars().all())
        await self.db.commit()

        summary = {"processed": 0, "exported": 0, "failed": 0, "skipped": 0}
        for batch_id in batch_ids:
            summary["processed"] += 1
            try:
                batch = await self.export_batch(batch_id)
            except (ExportPermanentException, ExportTransientException) as exc:
                logger.error(f"Export of batch {batch_id} failed: {exc.message}")
                summary["failed"] += 1
                continue
            except ConflictException as exc:
                logger.warning(f"Skipping batch {batch_id}: {exc.message}")
                summary["skipped"] += 1
                continue
            if batch.status == BatchStatus.EXPORTED:
                summary["exported"] += 1
            else:
                summary["skipped"] += 1

        logger.info(f"Pending batch export run: {summary}")
        return summary

    async def _claim(self, batch_id: uuid.UUID) -> Optional[str]:
        """Take exclusive ownership of the batch; None if another worker holds it."""
        now = utcnow()
        stale_before = now - timedelta(seconds=self.retry_config.claim_timeout_seconds)
        token = uuid.uuid4().hex
        result = await self.db.execute(
            update(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .where(
                or_(
                    NetsuiteBatch.status == BatchStatus.PENDING,
                    and_(
                        NetsuiteBatch.status == BatchStatus.SUBMITTING,
                        NetsuiteBatch.claimed_at < stale_before,
                    ),
                )
            )
            .values(status=BatchStatus.SUBMITTING, claim_token=token, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return token if result.rowcount == 1 else None

    async def _submit_with_retry(
        self,
        batch_id: uuid.UUID,
        claim_token: str,
        submission: LedgerSubmission,
    ) -> LedgerOutcome:
        config = self.retry_config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential(multiplier=config.backoff_base_seconds, max=config.backoff_max_seconds),
            retry=retry_if_exception_type(LedgerTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                outcome = await self._attempt(batch_id, claim_token, submission)
        return outcome

    async def _attempt(
        self,
        batch_id: uuid.UUID,
        claim_token: str,
        submission: LedgerSubmission,
    ) -> LedgerOutcome:
        """One ledger round trip, reconciling first if an earlier one may have landed."""
        previous_attempts, timed_out = await self._mark_attempt(batch_id, claim_token)

        if previous_attempts > 0 or timed_out:
            existing = await self._call_ledger(self.ledger.fetch_batch_status(submission.batch_reference))
            if existing is not None:
                logger.info(f"Batch {submission.batch_reference} already posted in ledger; reconciled")
                return existing

        try:
            return await self._call_ledger(self.ledger.submit_batch(submission))
        except LedgerTimeoutError:
            await self._flag_timeout(batch_id, claim_token)
            raise

    async def _call_ledger(self, call):
        try:
            return await asyncio.wait_for(call, timeout=self.retry_config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise LedgerTimeoutError("Ledger call exceeded the export timeout") from exc

    async def _mark_attempt(self, batch_id: uuid.UUID, claim_token: str):
        """Count the attempt against the batch; returns (previous attempts, timed out before)."""
        result = await self.db.execute(
            select(NetsuiteBatch.attempt_count, NetsuiteBatch.submission_timed_out)
            .where(NetsuiteBatch.id == batch_id)
            .where(NetsuiteBatch.claim_token == claim_token)
        )
        row = result.one_or_none()
        if row is None:
            await self.db.rollback()
            raise ClaimLostError(str(batch_id))

        await self.db.execute(
            update(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .where(NetsuiteBatch.claim_token == claim_token)
            .values(
                attempt_count=NetsuiteBatch.attempt_count + 1,
                claimed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return row.attempt_count, row.submission_timed_out

    async def _flag_timeout(self, batch_id: uuid.UUID, claim_token: str) -> None:
        await self.db.execute(
            update(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .where(NetsuiteBatch.claim_token == claim_token)
            .values(submission_timed_out=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # ===========================================
    # OUTCOMES
    # ===========================================

    async def _record_success(
        self,
        batch_id: uuid.UUID,
        claim_token: str,
        outcome: LedgerOutcome,
    ) -> NetsuiteBatch:
        now = utcnow()
        result = await self.db.execute(
            update(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .where(NetsuiteBatch.claim_token == claim_token)
            .values(
                status=BatchStatus.EXPORTED,
                exported_at=now,
                ledger_reference=outcome.reference,
                ledger_response=outcome.to_dict(),
                last_error=None,
                claim_token=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(f"Batch {batch_id} exported but claim was lost; new owner will reconcile")
            return await self.get_batch(batch_id)

        await self.audit.record(
            entity_type=BATCH_ENTITY,
            entity_id=batch_id,
            event_type=AuditEvent.BATCH_EXPORTED,
            old_value={"status": BatchStatus.SUBMITTING.value},
            new_value={
                "status": BatchStatus.EXPORTED.value,
                "ledger_reference": outcome.reference,
                "ledger_response": outcome.to_dict(),
            },
        )
        await self.db.commit()

        batch = await self.get_batch(batch_id)
        logger.info(f"Batch {batch.batch_reference} exported as {outcome.reference}")
        return batch

    async def _record_failure(
        self,
        batch_id: uuid.UUID,
        claim_token: str,
        exc: Exception,
        permanent: bool,
    ) -> None:
        raw = getattr(exc, "raw", {}) or {}
        kind = "permanent" if permanent else "transient"
        response = {"error": str(exc), "classification": kind, "raw": raw}

        result = await self.db.execute(
            update(NetsuiteBatch)
            .where(NetsuiteBatch.id == batch_id)
            .where(NetsuiteBatch.claim_token == claim_token)
            .values(
                status=BatchStatus.FAILED,
                ledger_response=response,
                last_error=str(exc),
                claim_token=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(f"Batch {batch_id} failed after its claim was lost; outcome not recorded")
            return

        await self.audit.record(
            entity_type=BATCH_ENTITY,
            entity_id=batch_id,
            event_type=AuditEvent.BATCH_EXPORT_FAILED,
            old_value={"status": BatchStatus.SUBMITTING.value},
            new_value={"status": BatchStatus.FAILED.value, **response},
        )
        await self.db.commit()
        logger.error(f"Batch {batch_id} export failed ({kind}): {exc}")

    async def _release_after_error(self, batch_id: uuid.UUID, claim_token: str, exc: Exception) -> None:
        """Unexpected error: audit it and hand the batch back to the pending queue."""
        await self.db.rollback()
        try:
            await self.db.execute(
                update(NetsuiteBatch)
                .where(NetsuiteBatch.id == batch_id)
                .where(NetsuiteBatch.claim_token == claim_token)
                .values(
                    status=BatchStatus.PENDING,
                    claim_token=None,
                    last_error=f"{type(exc).__name__}: {exc}",
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.audit.record(
                entity_type=BATCH_ENTITY,
                entity_id=batch_id,
                event_type=AuditEvent.BATCH_EXPORT_ERROR,
                new_value={"error": type(exc).__name__, "message": str(exc)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception(f"Could not record unexpected export error for batch {batch_id}")
        logger.error(f"Unexpected error exporting batch {batch_id}: {exc}")

    # ===========================================
    # REMEDIATION
    # ===========================================

    async def release_failed_batch(
        self,
        batch_id: uuid.UUID,
        actor_id: uuid.UUID,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> NetsuiteBatch:
        """
        Detach the reports of a failed batch so the next finalize batches them again.

        If the last submission timed out the ledger is asked first; a batch the
        ledger did post is marked exported instead of released.
        """
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.FAILED:
            raise ConflictException(
                f"Only failed batches can be released (batch is '{batch.status.value}')",
                resource_type="Batch",
                code=ErrorCode.BATCH_BUSY,
                details={"status": batch.status.value},
            )

        if batch.submission_timed_out:
            existing = await self._call_ledger(self.ledger.fetch_batch_status(batch.batch_reference))
            if existing is not None:
                token = uuid.uuid4().hex
                await self.db.execute(
                    update(NetsuiteBatch)
                    .where(NetsuiteBatch.id == batch_id)
                    .where(NetsuiteBatch.status == BatchStatus.FAILED)
                    .values(claim_token=token)
                    .execution_options(synchronize_session=False)
                )
                logger.warning(f"Batch {batch.batch_reference} was posted by the ledger; marking exported instead of releasing")
                return await self._record_success(batch_id, token, existing)

        result = await self.db.execute(
            select(ExpenseReport)
            .where(ExpenseReport.export_batch_id == batch_id)
            .execution_options(populate_existing=True)
        )
        reports = list(result.scalars().all())
        if not reports:
            raise ConflictException(
                f"Batch {batch.batch_reference} has already been released",
                resource_type="Batch",
                code=ErrorCode.BATCH_BUSY,
            )

        for report in reports:
            await self.db.execute(
                update(ExpenseReport)
                .where(ExpenseReport.id == report.id)
                .where(ExpenseReport.export_batch_id == batch_id)
                .values(export_batch_id=None, version=ExpenseReport.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.audit.record(
                entity_type=REPORT_ENTITY,
                entity_id=report.id,
                event_type=AuditEvent.REPORT_RELEASED,
                actor_id=actor_id,
                old_value={"export_batch_id": str(batch_id), "version": report.version},
                new_value={"export_batch_id": None, "version": report.version + 1},
                ip_address=ip_address,
                user_agent=user_agent,
            )

        await self.audit.record(
            entity_type=BATCH_ENTITY,
            entity_id=batch_id,
            event_type=AuditEvent.BATCH_RELEASED,
            actor_id=actor_id,
            new_value={"released_report_ids": [str(report.id) for report in reports]},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()

        logger.info(f"Released {len(reports)} report(s) from failed batch {batch.batch_reference}")
        return await self.get_batch(batch_id)

    # ===========================================
    # QUERIES
    # ===========================================

    async def list_batches(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent batches with report count and total amount."""
        totals = (
            select(
                JournalLine.batch_id.label("batch_id"),
                func.count(func.distinct(JournalLine.report_id)).label("report_count"),
                func.coalesce(func.sum(JournalLine.amount_cents), 0).label("total_amount_cents"),
            )
            .group_by(JournalLine.batch_id)
            .subquery()
        )
        result = await self.db.execute(
            select(NetsuiteBatch, totals.c.report_count, totals.c.total_amount_cents)
            .outerjoin(totals, totals.c.batch_id == NetsuiteBatch.id)
            .order_by(NetsuiteBatch.finalized_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": batch.id,
                "batch_reference": batch.batch_reference,
                "report_count": report_count or 0,
                "total_amount_cents": int(total_amount_cents or 0),
                "status": batch.status,
                "attempt_count": batch.attempt_count,
                "ledger_reference": batch.ledger_reference,
                "last_error": batch.last_error,
                "finalized_at": batch.finalized_at,
                "exported_at": batch.exported_at,
            }
            for batch, report_count, total_amount_cents in result.all()
        ]
