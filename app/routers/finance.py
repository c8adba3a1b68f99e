"""
Expense Lifecycle - Finance Router

Finance finalization, rejection and ledger batch management.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_caller, get_ledger
from app.schemas.auth import CallerClaim
from app.schemas.expense import (
    ExpenseReportResponse,
    FinalizeRequest,
    FinanceRejectRequest,
    ReportEnvelope,
)
from app.schemas.ledger import (
    BatchDetail,
    BatchEnvelope,
    BatchListResponse,
    BatchSummary,
    FinalizeResponse,
)
from app.services.finance_service import FinanceService
from app.services.ledger_client import LedgerClient

router = APIRouter(prefix="/finance", tags=["Finance"])


@router.post(
    "/finalize",
    response_model=FinalizeResponse,
    summary="Finalize approved reports and create an export batch",
)
async def finalize_reports(
    request: FinalizeRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    """
    Move every listed report to finance_finalized in one transaction and group
    all finalized, unbatched reports into a new batch.

    ``versions`` maps each report id to the version the caller last read.
    """
    result = await FinanceService(db, ledger).finalize(caller, request)
    return FinalizeResponse(
        reports=[ExpenseReportResponse.model_validate(report) for report in result.reports],
        batch=BatchDetail.model_validate(result.batch) if result.batch else None,
    )


@router.post(
    "/reports/{report_id}/reject",
    response_model=ReportEnvelope,
    summary="Send an approved report back for changes",
)
async def reject_report(
    report_id: uuid.UUID,
    request: FinanceRejectRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    report = await FinanceService(db, ledger).reject_report(caller, report_id, request)
    return ReportEnvelope(report=ExpenseReportResponse.model_validate(report))


# ===========================================
# BATCHES
# ===========================================

@router.get(
    "/batches",
    response_model=BatchListResponse,
    summary="List recent export batches",
)
async def list_batches(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    batches = await FinanceService(db, ledger).list_batches(caller, limit=limit)
    return BatchListResponse(
        batches=[BatchSummary(**batch) for batch in batches],
        total=len(batches),
    )


@router.get(
    "/batches/{batch_id}",
    response_model=BatchEnvelope,
    summary="Get batch with journal lines",
)
async def get_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    batch = await FinanceService(db, ledger).get_batch(caller, batch_id)
    return BatchEnvelope(batch=BatchDetail.model_validate(batch))


@router.post(
    "/batches/{batch_id}/export",
    response_model=BatchEnvelope,
    summary="Export (or resume exporting) a batch",
)
async def export_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    """Idempotent: an exported batch is returned as-is and never resubmitted."""
    batch = await FinanceService(db, ledger).export_batch(caller, batch_id)
    return BatchEnvelope(batch=BatchDetail.model_validate(batch))


@router.post(
    "/batches/{batch_id}/release",
    response_model=BatchEnvelope,
    summary="Release the reports of a failed batch",
)
async def release_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
    ledger: LedgerClient = Depends(get_ledger),
):
    batch = await FinanceService(db, ledger).release_batch(caller, batch_id)
    return BatchEnvelope(batch=BatchDetail.model_validate(batch))
