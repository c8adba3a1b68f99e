"""
Expense Lifecycle - Approvals Router

Manager review queue and decisions on submitted reports.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_caller
from app.schemas.auth import CallerClaim
from app.schemas.expense import (
    ApprovalRequest,
    ExpenseReportResponse,
    ReportEnvelope,
    ReportListResponse,
)
from app.services.report_service import ReportService
from app.services.workflow_service import (
    ACTION_FOR_DECISION,
    TransitionRequest,
    WorkflowService,
)

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get(
    "/queue",
    response_model=ReportListResponse,
    summary="Reports awaiting my review",
)
async def review_queue(
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    """Submitted reports of the caller's direct reports, oldest submission first."""
    reports = await ReportService(db).manager_queue(caller)
    return ReportListResponse(
        reports=[ExpenseReportResponse.model_validate(report) for report in reports],
        total=len(reports),
    )


@router.post(
    "/{report_id}",
    response_model=ReportEnvelope,
    summary="Record manager decision",
)
async def decide(
    report_id: uuid.UUID,
    request: ApprovalRequest,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    """
    Approve, deny or request changes on a submitted report.

    Deny and needs_changes require a comment; approving a report with policy
    exceptions requires an override justification.
    """
    report = await WorkflowService(db).transition(
        caller,
        TransitionRequest(
            report_id=report_id,
            action=ACTION_FOR_DECISION[request.decision],
            expected_version=request.version,
            comment=request.comment,
            override_justification=request.override_justification,
        ),
    )
    return ReportEnvelope(report=ExpenseReportResponse.model_validate(report))
