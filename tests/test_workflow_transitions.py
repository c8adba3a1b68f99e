"""
Tests for the report workflow state machine.

Covers every edge of the transition table, every non-edge, the role guards
and the order in which rejections are reported.
"""

import itertools
import uuid

import pytest

from app.models.audit import AuditEvent
from app.models.expense import ApprovalDecision, ExpenseCategory, ReportStatus
from app.services.workflow_service import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    TransitionRequest,
    WorkflowAction,
    WorkflowService,
    next_status,
)
from app.utils.error_handling import (
    AuthorizationException,
    ErrorCode,
    NotFoundException,
    PolicyViolationException,
    TransitionException,
    ValidationException,
    VersionConflictException,
)

from fixtures.factories import expense_item, lodging, meal


ACTOR_FOR_ACTION = {
    WorkflowAction.SUBMIT: "employee",
    WorkflowAction.RESUBMIT: "employee",
    WorkflowAction.APPROVE: "manager",
    WorkflowAction.REQUEST_CHANGES: "manager",
    WorkflowAction.DENY: "manager",
    WorkflowAction.FINANCE_FINALIZE: "finance",
    WorkflowAction.FINANCE_REJECT: "finance",
}

NON_EDGES = [
    (status, action)
    for status, action in itertools.product(ReportStatus, WorkflowAction)
    if (status, action) not in TRANSITIONS
]


async def run_transition(session_factory, caller, report_id, action, version, **kwargs):
    async with session_factory() as db:
        return await WorkflowService(db).transition(
            caller,
            TransitionRequest(report_id=report_id, action=action, expected_version=version, **kwargs),
        )


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class TestTransitionTable:
    """The table is a total function over (status, action)."""

    def test_exactly_seven_edges(self):
        assert len(TRANSITIONS) == 7

    def test_terminal_statuses_have_no_outgoing_edges(self):
        for status in TERMINAL_STATUSES:
            assert not [key for key in TRANSITIONS if key[0] == status]

    @pytest.mark.parametrize("status,action", NON_EDGES)
    def test_next_status_rejects_non_edges(self, status, action):
        with pytest.raises(TransitionException) as exc_info:
            next_status(status, action)

        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION
        assert exc_info.value.details["current_status"] == status.value


class TestEdges:
    """Each edge moves the report, bumps the version and appends one audit entry."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "start,action,expected",
        [
            (ReportStatus.DRAFT, WorkflowAction.SUBMIT, ReportStatus.SUBMITTED),
            (ReportStatus.SUBMITTED, WorkflowAction.APPROVE, ReportStatus.MANAGER_APPROVED),
            (ReportStatus.SUBMITTED, WorkflowAction.REQUEST_CHANGES, ReportStatus.NEEDS_CHANGES),
            (ReportStatus.SUBMITTED, WorkflowAction.DENY, ReportStatus.DENIED),
            (ReportStatus.NEEDS_CHANGES, WorkflowAction.RESUBMIT, ReportStatus.SUBMITTED),
            (ReportStatus.MANAGER_APPROVED, WorkflowAction.FINANCE_FINALIZE, ReportStatus.FINANCE_FINALIZED),
            (ReportStatus.MANAGER_APPROVED, WorkflowAction.FINANCE_REJECT, ReportStatus.NEEDS_CHANGES),
        ],
    )
    async def test_edge(
        self, start, action, expected, people, policy, make_report, session_factory,
        caller_for, fetch_report, fetch_trail,
    ):
        report = await make_report(people["employee"], status=start)
        actor = people[ACTOR_FOR_ACTION[action]]

        updated = await run_transition(
            session_factory, caller_for(actor), report.id, action, 1, comment="Please review receipts"
        )

        assert updated.status == expected
        assert updated.version == 2

        stored = await fetch_report(report.id)
        assert stored.status == expected
        assert stored.version == 2

        trail = await fetch_trail("expense_report", report.id)
        assert [entry.event_type for entry in trail] == [AuditEvent.STATUS_TRANSITION]
        entry = trail[0]
        assert entry.performed_by == actor.id
        assert entry.old_value["status"] == start.value
        assert entry.new_value["status"] == expected.value
        assert entry.new_value["action"] == action.value
        assert entry.ip_address == "10.0.0.1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,action", NON_EDGES)
    async def test_non_edge_is_rejected_without_side_effects(
        self, status, action, people, make_report, session_factory, caller_for, fetch_report, fetch_trail,
    ):
        report = await make_report(people["employee"], status=status)
        actor = people[ACTOR_FOR_ACTION[action]]

        with pytest.raises(TransitionException):
            await run_transition(session_factory, caller_for(actor), report.id, action, 1, comment="x")

        stored = await fetch_report(report.id)
        assert stored.status == status
        assert stored.version == 1
        assert await fetch_trail("expense_report", report.id) == []


# =============================================================================
# AUTHORIZATION
# =============================================================================

class TestAuthorization:
    """Only the owner submits, only the owner's manager reviews, only finance finalizes."""

    @pytest.mark.asyncio
    async def test_only_owner_can_submit(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"])

        with pytest.raises(AuthorizationException) as exc_info:
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.SUBMIT, 1)

        assert exc_info.value.code == ErrorCode.NOT_OWNER

    @pytest.mark.asyncio
    async def test_other_manager_cannot_approve(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.SUBMITTED)

        with pytest.raises(AuthorizationException) as exc_info:
            await run_transition(
                session_factory, caller_for(people["other_manager"]), report.id, WorkflowAction.APPROVE, 1
            )

        assert exc_info.value.code == ErrorCode.NOT_MANAGER

    @pytest.mark.asyncio
    async def test_manager_cannot_approve_own_report(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["manager"], status=ReportStatus.SUBMITTED)

        with pytest.raises(AuthorizationException) as exc_info:
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.APPROVE, 1)

        assert exc_info.value.code == ErrorCode.NOT_MANAGER

    @pytest.mark.asyncio
    async def test_finance_cannot_act_as_manager(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.SUBMITTED)

        with pytest.raises(AuthorizationException):
            await run_transition(session_factory, caller_for(people["finance"]), report.id, WorkflowAction.APPROVE, 1)

    @pytest.mark.asyncio
    async def test_manager_cannot_finalize(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.MANAGER_APPROVED)

        with pytest.raises(AuthorizationException) as exc_info:
            await run_transition(
                session_factory, caller_for(people["manager"]), report.id, WorkflowAction.FINANCE_FINALIZE, 1
            )

        assert exc_info.value.code == ErrorCode.ROLE_REQUIRED


class TestCheckOrder:
    """404, then 403, then stale version, then invalid edge, then guards."""

    @pytest.mark.asyncio
    async def test_unknown_report(self, people, session_factory, caller_for):
        with pytest.raises(NotFoundException) as exc_info:
            await run_transition(session_factory, caller_for(people["employee"]), uuid.uuid4(), WorkflowAction.SUBMIT, 1)

        assert exc_info.value.code == ErrorCode.REPORT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_authorization_before_version(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"])

        with pytest.raises(AuthorizationException):
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.SUBMIT, 7)

    @pytest.mark.asyncio
    async def test_version_before_edge(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.DENIED)

        with pytest.raises(VersionConflictException) as exc_info:
            await run_transition(session_factory, caller_for(people["employee"]), report.id, WorkflowAction.SUBMIT, 3)

        assert exc_info.value.details["current_version"] == 1

    @pytest.mark.asyncio
    async def test_edge_before_guard(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.DRAFT)

        # Missing comment would fail the guard, but deny is not an edge from draft
        with pytest.raises(TransitionException):
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.DENY, 1)


# =============================================================================
# GUARDS
# =============================================================================

class TestGuards:
    """Comments, policy evaluation on submit and override justification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [WorkflowAction.REQUEST_CHANGES, WorkflowAction.DENY])
    async def test_comment_required(self, action, people, make_report, session_factory, caller_for, fetch_report):
        report = await make_report(people["employee"], status=ReportStatus.SUBMITTED)

        with pytest.raises(ValidationException) as exc_info:
            await run_transition(session_factory, caller_for(people["manager"]), report.id, action, 1, comment="   ")

        assert "comment" in exc_info.value.errors
        assert (await fetch_report(report.id)).status == ReportStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_finance_reject_requires_comment(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.MANAGER_APPROVED)

        with pytest.raises(ValidationException):
            await run_transition(
                session_factory, caller_for(people["finance"]), report.id, WorkflowAction.FINANCE_REJECT, 1
            )

    @pytest.mark.asyncio
    async def test_submit_blocked_by_policy_error(
        self, people, policy, make_report, session_factory, caller_for, fetch_report, fetch_trail,
    ):
        report = await make_report(
            people["employee"], items=[expense_item(ExpenseCategory.SUPPLIES, 40000, description="Monitor")]
        )

        with pytest.raises(PolicyViolationException) as exc_info:
            await run_transition(session_factory, caller_for(people["employee"]), report.id, WorkflowAction.SUBMIT, 1)

        assert exc_info.value.code == ErrorCode.POLICY_VIOLATION
        assert "items[0].receipts" in exc_info.value.errors
        stored = await fetch_report(report.id)
        assert stored.status == ReportStatus.DRAFT
        assert stored.version == 1
        assert await fetch_trail("expense_report", report.id) == []

    @pytest.mark.asyncio
    async def test_submit_flags_policy_exceptions(self, people, policy, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], items=[meal(900), lodging(35000)])

        submitted = await run_transition(
            session_factory, caller_for(people["employee"]), report.id, WorkflowAction.SUBMIT, 1
        )

        assert submitted.status == ReportStatus.SUBMITTED
        assert submitted.submitted_at is not None
        assert [item.is_policy_exception for item in submitted.items] == [False, True]
        assert "lodging.per_night" in submitted.items[1].policy_exception_reasons[0]
        assert submitted.has_policy_exceptions

    @pytest.mark.asyncio
    async def test_approving_exceptions_needs_justification(
        self, people, policy, make_report, session_factory, caller_for, fetch_trail,
    ):
        report = await make_report(people["employee"], items=[lodging(35000)])
        await run_transition(session_factory, caller_for(people["employee"]), report.id, WorkflowAction.SUBMIT, 1)

        with pytest.raises(ValidationException) as exc_info:
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.APPROVE, 2)

        assert exc_info.value.code == ErrorCode.GUARD_FAILED
        assert "items[0]" in exc_info.value.errors["override_justification"][0]

        approved = await run_transition(
            session_factory, caller_for(people["manager"]), report.id, WorkflowAction.APPROVE, 2,
            override_justification="Conference hotel; city-wide rates were higher",
        )

        assert approved.status == ReportStatus.MANAGER_APPROVED
        [approval] = approved.approvals
        assert approval.decision == ApprovalDecision.APPROVED
        assert approval.approver_id == people["manager"].id
        assert approval.override_justification.startswith("Conference hotel")

        trail = await fetch_trail("expense_report", report.id)
        assert trail[-1].new_value["override_justification"].startswith("Conference hotel")

    @pytest.mark.asyncio
    async def test_over_per_diem_meal_without_receipt(self, people, policy, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], items=[meal(18500, day=5)])

        submitted = await run_transition(
            session_factory, caller_for(people["employee"]), report.id, WorkflowAction.SUBMIT, 1
        )

        assert submitted.status == ReportStatus.SUBMITTED
        [item] = submitted.items
        assert item.receipts == []
        assert item.is_policy_exception is True
        assert item.policy_exception_reasons == [
            "Daily meal total 185.00 USD exceeds per-diem cap 15.00 USD (meal.per_diem)"
        ]

        with pytest.raises(ValidationException) as exc_info:
            await run_transition(session_factory, caller_for(people["manager"]), report.id, WorkflowAction.APPROVE, 2)

        assert exc_info.value.code == ErrorCode.GUARD_FAILED
        assert exc_info.value.errors == {
            "override_justification": ["Override justification is required for policy exceptions on items[0]"]
        }

    @pytest.mark.asyncio
    async def test_resubmit_reevaluates_policy(self, people, policy, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.NEEDS_CHANGES, items=[meal(2000)])

        resubmitted = await run_transition(
            session_factory, caller_for(people["employee"]), report.id, WorkflowAction.RESUBMIT, 1
        )

        assert resubmitted.status == ReportStatus.SUBMITTED
        assert resubmitted.items[0].is_policy_exception


class TestFullLifecycle:
    """Draft to finalized through the happy path, with request-changes in between."""

    @pytest.mark.asyncio
    async def test_round_trip(self, people, policy, make_report, session_factory, caller_for, fetch_trail):
        report = await make_report(people["employee"])
        employee = caller_for(people["employee"])
        manager = caller_for(people["manager"])
        finance = caller_for(people["finance"])

        steps = [
            (employee, WorkflowAction.SUBMIT, {}),
            (manager, WorkflowAction.REQUEST_CHANGES, {"comment": "Add the attendee list"}),
            (employee, WorkflowAction.RESUBMIT, {}),
            (manager, WorkflowAction.APPROVE, {}),
            (finance, WorkflowAction.FINANCE_FINALIZE, {}),
        ]
        version = 1
        for caller, action, extra in steps:
            current = await run_transition(session_factory, caller, report.id, action, version, **extra)
            assert current.version == version + 1
            version = current.version

        assert current.status == ReportStatus.FINANCE_FINALIZED
        assert current.finalized_at is not None
        assert [approval.decision for approval in current.approvals] == [
            ApprovalDecision.NEEDS_CHANGES,
            ApprovalDecision.APPROVED,
            ApprovalDecision.APPROVED,
        ]

        trail = await fetch_trail("expense_report", report.id)
        assert [entry.sequence for entry in trail] == [1, 2, 3, 4, 5]
        assert [entry.new_value["status"] for entry in trail] == [
            "submitted", "needs_changes", "submitted", "manager_approved", "finance_finalized",
        ]
