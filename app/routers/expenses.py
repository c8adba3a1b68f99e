"""
Expense Lifecycle - Expense Reports Router

Owner-facing endpoints: drafts, line items, submission and policy preview.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_caller
from app.models.expense import ReportStatus
from app.schemas.auth import CallerClaim
from app.schemas.expense import (
    ExpenseReportCreate,
    ExpenseReportResponse,
    ItemMutationRequest,
    PolicyEvaluationResponse,
    ReportEnvelope,
    ReportListResponse,
    VersionedRequest,
)
from app.services.report_service import ReportService
from app.services.workflow_service import TransitionRequest, WorkflowAction, WorkflowService

router = APIRouter(prefix="/expenses/reports", tags=["Expense Reports"])


def _envelope(report) -> ReportEnvelope:
    return ReportEnvelope(report=ExpenseReportResponse.model_validate(report))


@router.post(
    "",
    response_model=ReportEnvelope,
    status_code=status.HTTP_201_CREATED,
    summary="Create draft expense report",
)
async def create_report(
    request: ExpenseReportCreate,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    """Create a draft report owned by the caller."""
    report = await ReportService(db).create_report(caller, request)
    return _envelope(report)


@router.get(
    "",
    response_model=ReportListResponse,
    summary="List my expense reports",
)
async def list_reports(
    status_filter: Optional[ReportStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    reports = await ReportService(db).list_reports(caller, status_filter)
    return ReportListResponse(
        reports=[ExpenseReportResponse.model_validate(report) for report in reports],
        total=len(reports),
    )


@router.get(
    "/{report_id}",
    response_model=ReportEnvelope,
    summary="Get expense report",
)
async def get_report(
    report_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await ReportService(db).get_report(caller, report_id)
    return _envelope(report)


@router.get(
    "/{report_id}/policy",
    response_model=PolicyEvaluationResponse,
    summary="Preview policy evaluation",
)
async def evaluate_policy(
    report_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    """Run the policy engine over the report without changing it."""
    result = await ReportService(db).evaluate_policy(caller, report_id)
    return PolicyEvaluationResponse(**result.to_dict())


# ===========================================
# TRANSITIONS
# ===========================================

@router.post(
    "/{report_id}/submit",
    response_model=ReportEnvelope,
    summary="Submit report for manager review",
)
async def submit_report(
    report_id: uuid.UUID,
    request: VersionedRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await WorkflowService(db).transition(
        caller,
        TransitionRequest(report_id=report_id, action=WorkflowAction.SUBMIT, expected_version=request.version),
    )
    return _envelope(report)


@router.post(
    "/{report_id}/resubmit",
    response_model=ReportEnvelope,
    summary="Resubmit report after requested changes",
)
async def resubmit_report(
    report_id: uuid.UUID,
    request: VersionedRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await WorkflowService(db).transition(
        caller,
        TransitionRequest(report_id=report_id, action=WorkflowAction.RESUBMIT, expected_version=request.version),
    )
    return _envelope(report)


# ===========================================
# LINE ITEMS
# ===========================================

@router.post(
    "/{report_id}/items",
    response_model=ReportEnvelope,
    status_code=status.HTTP_201_CREATED,
    summary="Add expense item",
)
async def add_item(
    report_id: uuid.UUID,
    request: ItemMutationRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await ReportService(db).add_item(caller, report_id, request, request.version)
    return _envelope(report)


@router.put(
    "/{report_id}/items/{item_id}",
    response_model=ReportEnvelope,
    summary="Replace expense item",
)
async def update_item(
    report_id: uuid.UUID,
    item_id: uuid.UUID,
    request: ItemMutationRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await ReportService(db).update_item(caller, report_id, item_id, request, request.version)
    return _envelope(report)


@router.delete(
    "/{report_id}/items/{item_id}",
    response_model=ReportEnvelope,
    summary="Remove expense item",
)
async def remove_item(
    report_id: uuid.UUID,
    item_id: uuid.UUID,
    version: int = Query(..., ge=1, description="Report version last read"),
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    report = await ReportService(db).remove_item(caller, report_id, item_id, version)
    return _envelope(report)
