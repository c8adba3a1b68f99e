"""
Expense Lifecycle - Workflow State Machine

Report status transitions.

The transition table is a total function over (status, action): every pair
either maps to exactly one next status or is rejected as an invalid
transition. Each transition runs in one database transaction guarded by the
report version and appends exactly one audit entry.

Checks run in a fixed order so callers get the most useful rejection:
not found (404), authorization (403), stale version (409), invalid edge
(409), then guard failures (422).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.audit import AuditEvent
from app.models.base import utcnow
from app.models.expense import Approval, ApprovalDecision, ExpenseReport, ReportStatus
from app.models.employee import EmployeeRole
from app.schemas.auth import CallerClaim
from app.services.audit_service import AuditService
from app.services.policy_engine import PolicyRules, ValidationResult, validate_report
from app.services.report_store import ReportStore, report_snapshot, report_state
from app.utils.error_handling import (
    AppException,
    AuthorizationException,
    ErrorCode,
    PolicyViolationException,
    TransitionException,
    ValidationException,
)

logger = logging.getLogger(__name__)


class WorkflowAction(str, Enum):
    """Actions that move a report between statuses."""
    SUBMIT = "submit"
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    DENY = "deny"
    RESUBMIT = "resubmit"
    FINANCE_FINALIZE = "finance_finalize"
    FINANCE_REJECT = "finance_reject"


TRANSITIONS: Dict[Tuple[ReportStatus, WorkflowAction], ReportStatus] = {
    (ReportStatus.DRAFT, WorkflowAction.SUBMIT): ReportStatus.SUBMITTED,
    (ReportStatus.SUBMITTED, WorkflowAction.APPROVE): ReportStatus.MANAGER_APPROVED,
    (ReportStatus.SUBMITTED, WorkflowAction.REQUEST_CHANGES): ReportStatus.NEEDS_CHANGES,
    (ReportStatus.SUBMITTED, WorkflowAction.DENY): ReportStatus.DENIED,
    (ReportStatus.NEEDS_CHANGES, WorkflowAction.RESUBMIT): ReportStatus.SUBMITTED,
    (ReportStatus.MANAGER_APPROVED, WorkflowAction.FINANCE_FINALIZE): ReportStatus.FINANCE_FINALIZED,
    (ReportStatus.MANAGER_APPROVED, WorkflowAction.FINANCE_REJECT): ReportStatus.NEEDS_CHANGES,
}

TERMINAL_STATUSES = frozenset({ReportStatus.DENIED, ReportStatus.FINANCE_FINALIZED})

OWNER_ACTIONS = frozenset({WorkflowAction.SUBMIT, WorkflowAction.RESUBMIT})
MANAGER_ACTIONS = frozenset({WorkflowAction.APPROVE, WorkflowAction.REQUEST_CHANGES, WorkflowAction.DENY})
FINANCE_ACTIONS = frozenset({WorkflowAction.FINANCE_FINALIZE, WorkflowAction.FINANCE_REJECT})
COMMENT_REQUIRED = frozenset({WorkflowAction.REQUEST_CHANGES, WorkflowAction.DENY, WorkflowAction.FINANCE_REJECT})

DECISIONS: Dict[WorkflowAction, ApprovalDecision] = {
    WorkflowAction.APPROVE: ApprovalDecision.APPROVED,
    WorkflowAction.REQUEST_CHANGES: ApprovalDecision.NEEDS_CHANGES,
    WorkflowAction.DENY: ApprovalDecision.DENIED,
    WorkflowAction.FINANCE_FINALIZE: ApprovalDecision.APPROVED,
    WorkflowAction.FINANCE_REJECT: ApprovalDecision.NEEDS_CHANGES,
}

ACTION_FOR_DECISION: Dict[ApprovalDecision, WorkflowAction] = {
    ApprovalDecision.APPROVED: WorkflowAction.APPROVE,
    ApprovalDecision.NEEDS_CHANGES: WorkflowAction.REQUEST_CHANGES,
    ApprovalDecision.DENIED: WorkflowAction.DENY,
}


def next_status(current: ReportStatus, action: WorkflowAction) -> ReportStatus:
    """Target status for ``action`` from ``current``; raises for non-edges."""
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise TransitionException(current.value, action.value) from None


@dataclass
class TransitionRequest:
    """Inputs for one transition."""
    report_id: uuid.UUID
    action: WorkflowAction
    expected_version: int
    comment: Optional[str] = None
    override_justification: Optional[str] = None


class WorkflowService:
    """Applies workflow actions to expense reports."""

    def __init__(self, db: AsyncSession, rules: Optional[PolicyRules] = None):
        self.db = db
        self.store = ReportStore(db)
        self.audit = AuditService(db)
        self.rules = rules or PolicyRules.from_settings(settings)

    async def transition(self, caller: CallerClaim, request: TransitionRequest) -> ExpenseReport:
        """Apply one action and commit."""
        try:
            report = await self.apply(caller, request)
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception as exc:
            await self.db.rollback()
            await self.record_failure(caller, request.report_id, request.action.value, exc)
            raise

        logger.info(
            f"Report {report.id} {request.action.value} by {caller.employee_id} "
            f"-> {report.status.value} (v{report.version})"
        )
        return report

    async def apply(self, caller: CallerClaim, request: TransitionRequest) -> ExpenseReport:
        """
        Apply one action without committing.

        Used directly when several transitions must commit together
        (finance finalization of many reports).
        """
        report = await self.store.get(request.report_id)
        await self._authorize(caller, report, request.action)
        self.store.ensure_version(report, request.expected_version)
        target = next_status(report.status, request.action)

        before = report_state(report)
        validation = await self._check_guards(caller, report, request)

        report.status = target
        now = utcnow()
        if request.action in OWNER_ACTIONS:
            report.submitted_at = now
        if request.action == WorkflowAction.FINANCE_FINALIZE:
            report.finalized_at = now

        decision = DECISIONS.get(request.action)
        if decision is not None:
            report.approvals.append(
                Approval(
                    approver_id=caller.employee_id,
                    role=caller.role.value,
                    decision=decision,
                    comment=request.comment,
                    override_justification=request.override_justification,
                )
            )

        await self.store.save(report, request.expected_version)

        after = report_state(report)
        after["action"] = request.action.value
        if request.comment:
            after["comment"] = request.comment
        if request.override_justification:
            after["override_justification"] = request.override_justification
        if validation is not None:
            after["policy_exception_items"] = sorted(validation.exception_items)

        await self.audit.record(
            entity_type="expense_report",
            entity_id=report.id,
            event_type=AuditEvent.STATUS_TRANSITION,
            actor_id=caller.employee_id,
            old_value=before,
            new_value=after,
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
        )
        return report

    async def record_failure(
        self,
        caller: CallerClaim,
        report_id: uuid.UUID,
        action: str,
        exc: Exception,
    ) -> None:
        """Audit an unexpected failure in its own transaction; the caller re-raises."""
        try:
            await self.audit.record(
                entity_type="expense_report",
                entity_id=report_id,
                event_type=AuditEvent.TRANSITION_FAILED,
                actor_id=caller.employee_id,
                new_value={"action": action, "error": type(exc).__name__, "message": str(exc)},
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception(f"Could not audit failed {action} on report {report_id}")
        logger.error(f"Unexpected failure during {action} on report {report_id}: {exc}")

    # ===========================================
    # AUTHORIZATION
    # ===========================================

    async def _authorize(self, caller: CallerClaim, report: ExpenseReport, action: WorkflowAction) -> None:
        if action in OWNER_ACTIONS:
            if caller.employee_id != report.employee_id:
                raise AuthorizationException(
                    "Only the report owner can submit this report",
                    required_permission="owner",
                    code=ErrorCode.NOT_OWNER,
                )
            return

        if action in MANAGER_ACTIONS:
            owner = await self.store.get_employee(report.employee_id)
            if (
                caller.role != EmployeeRole.MANAGER
                or owner is None
                or owner.manager_id != caller.employee_id
                or caller.employee_id == report.employee_id
            ):
                raise AuthorizationException(
                    "Only the owner's manager can review this report",
                    required_permission="manager_of_owner",
                    code=ErrorCode.NOT_MANAGER,
                )
            return

        if action in FINANCE_ACTIONS:
            if caller.role != EmployeeRole.FINANCE:
                raise AuthorizationException(
                    "Finance role required",
                    required_permission=EmployeeRole.FINANCE.value,
                    code=ErrorCode.ROLE_REQUIRED,
                )
            return

        raise AuthorizationException(f"Unknown action '{action}'")

    # ===========================================
    # GUARDS
    # ===========================================

    async def _check_guards(
        self,
        caller: CallerClaim,
        report: ExpenseReport,
        request: TransitionRequest,
    ) -> Optional[ValidationResult]:
        action = request.action

        if action in COMMENT_REQUIRED and not (request.comment or "").strip():
            raise ValidationException.for_field("comment", f"A comment is required to {action.value.replace('_', ' ')}")

        if action in OWNER_ACTIONS:
            return await self.evaluate_and_flag(report)

        if action == WorkflowAction.APPROVE and report.has_policy_exceptions:
            if not (request.override_justification or "").strip():
                flagged = [f"items[{index}]" for index, item in enumerate(report.items) if item.is_policy_exception]
                raise ValidationException(
                    message="Override justification is required to approve policy exceptions",
                    errors={
                        "override_justification": [
                            "Override justification is required for policy exceptions on "
                            f"{', '.join(flagged)}"
                        ]
                    },
                    field="override_justification",
                    code=ErrorCode.GUARD_FAILED,
                )

        return None

    async def evaluate(self, report: ExpenseReport) -> ValidationResult:
        """Run the policy engine over the report's current contents."""
        caps, rates = await self.store.load_policy_context(report)
        return validate_report(report_snapshot(report), caps, rates, self.rules)

    async def evaluate_and_flag(self, report: ExpenseReport) -> ValidationResult:
        """Evaluate for submission: hard errors block, exceptions are stored on items."""
        result = await self.evaluate(report)
        if not result.is_valid:
            logger.warning(f"Report {report.id} blocked by policy: {sorted(result.errors)}")
            raise PolicyViolationException(result.errors)

        for index, item in enumerate(report.items):
            flagged = index in result.exception_items
            item.is_policy_exception = flagged
            item.policy_exception_reasons = result.exception_reasons(index) if flagged else None
        return result
