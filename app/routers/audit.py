"""
Expense Lifecycle - Audit Trail Router

Read-only access to per-entity audit chains and their verification.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_caller
from app.models.employee import EmployeeRole
from app.schemas.audit import AuditEntryResponse, AuditTrailResponse, ChainVerificationResponse
from app.schemas.auth import CallerClaim
from app.services.audit_service import AuditService
from app.services.report_service import ReportService
from app.utils.error_handling import AuthorizationException, ValidationException

router = APIRouter(prefix="/audit", tags=["Audit Trail"])

AUDITED_ENTITIES = ("expense_report", "netsuite_batch")


async def _authorize(db: AsyncSession, caller: CallerClaim, entity_type: str, entity_id: uuid.UUID) -> None:
    if entity_type not in AUDITED_ENTITIES:
        raise ValidationException.for_field("entity_type", f"Unknown entity type '{entity_type}'")
    if entity_type == "expense_report":
        # Owner or reviewer; raises 404/403 as for reading the report itself
        await ReportService(db).get_report(caller, entity_id)
        return
    if caller.role not in (EmployeeRole.FINANCE, EmployeeRole.ADMIN):
        raise AuthorizationException("Finance role required to read batch history")


@router.get(
    "/{entity_type}/{entity_id}",
    response_model=AuditTrailResponse,
    summary="Audit trail for an entity",
)
async def get_trail(
    entity_type: str,
    entity_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    await _authorize(db, caller, entity_type, entity_id)
    entries = await AuditService(db).get_trail(entity_type, entity_id)
    return AuditTrailResponse(
        entity_type=entity_type,
        entity_id=str(entity_id),
        entries=[AuditEntryResponse.model_validate(entry) for entry in entries],
    )


@router.get(
    "/{entity_type}/{entity_id}/verify",
    response_model=ChainVerificationResponse,
    summary="Verify an entity's hash chain",
)
async def verify_trail(
    entity_type: str,
    entity_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller: CallerClaim = Depends(get_current_caller),
):
    """Replay the chain and report every entry whose hash no longer matches."""
    await _authorize(db, caller, entity_type, entity_id)
    verification = await AuditService(db).verify_chain(entity_type, entity_id)
    return ChainVerificationResponse(**verification.to_dict())
