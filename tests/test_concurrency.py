"""
Tests for optimistic concurrency on expense reports.

Every mutation carries the version the caller last read. Stale versions are
rejected up front; concurrent writers racing on the same version are
serialized by the versioned UPDATE so exactly one wins.
"""

import asyncio
from datetime import date

import pytest
from sqlalchemy import select

from app.models.audit import AuditEvent, AuditLogEntry
from app.models.expense import ExpenseCategory, ExpenseReport, ReportStatus
from app.schemas.expense import ExpenseItemInput, ExpenseReportCreate, ReceiptInput
from app.services.report_service import ReportService
from app.services.report_store import ReportStore
from app.services.workflow_service import TransitionRequest, WorkflowAction, WorkflowService
from app.utils.error_handling import (
    AuthorizationException,
    ConflictException,
    ErrorCode,
    ValidationException,
    VersionConflictException,
)

from fixtures.factories import meal


def item_input(amount_cents=1250, category=ExpenseCategory.MEAL, day=3, **kwargs) -> ExpenseItemInput:
    return ExpenseItemInput(
        expense_date=date(2024, 4, day),
        category=category,
        amount_cents=amount_cents,
        **kwargs,
    )


# =============================================================================
# DRAFT EDITING
# =============================================================================

class TestDraftEditing:
    """Item changes bump the version and recompute totals."""

    @pytest.mark.asyncio
    async def test_create_report(self, people, session_factory, caller_for, fetch_trail):
        async with session_factory() as db:
            report = await ReportService(db).create_report(
                caller_for(people["employee"]),
                ExpenseReportCreate(
                    reporting_period_start=date(2024, 4, 1),
                    reporting_period_end=date(2024, 4, 30),
                    currency="USD",
                    items=[item_input(1250), item_input(800, reimbursable=False)],
                ),
            )

        assert report.status == ReportStatus.DRAFT
        assert report.version == 1
        assert report.total_amount_cents == 2050
        assert report.total_reimbursable_cents == 1250
        assert [item.position for item in report.items] == [0, 1]

        trail = await fetch_trail("expense_report", report.id)
        assert [entry.event_type for entry in trail] == ["report_created"]
        assert trail[0].new_value["item_count"] == 2

    @pytest.mark.asyncio
    async def test_create_rejects_inverted_period(self, people, session_factory, caller_for):
        async with session_factory() as db:
            with pytest.raises(ValidationException) as exc_info:
                await ReportService(db).create_report(
                    caller_for(people["employee"]),
                    ExpenseReportCreate(
                        reporting_period_start=date(2024, 4, 30),
                        reporting_period_end=date(2024, 4, 1),
                    ),
                )

        assert "reporting_period_end" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_create_rejects_bad_receipt(self, people, session_factory, caller_for):
        receipt = ReceiptInput(file_key="receipts/a.exe", file_name="a.exe", mime_type="application/x-msdownload", size_bytes=10)

        async with session_factory() as db:
            with pytest.raises(ValidationException) as exc_info:
                await ReportService(db).create_report(
                    caller_for(people["employee"]),
                    ExpenseReportCreate(
                        reporting_period_start=date(2024, 4, 1),
                        reporting_period_end=date(2024, 4, 30),
                        items=[item_input(receipts=[receipt])],
                    ),
                )

        assert "items[0].receipts[0].mime_type" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_add_update_remove_item(self, people, make_report, session_factory, caller_for, fetch_trail):
        report = await make_report(people["employee"], items=[meal(1250)])
        caller = caller_for(people["employee"])

        async with session_factory() as db:
            added = await ReportService(db).add_item(caller, report.id, item_input(3000, ExpenseCategory.SUPPLIES), 1)
        assert added.version == 2
        assert added.total_amount_cents == 4250
        new_item = added.items[1]
        assert new_item.position == 1

        async with session_factory() as db:
            updated = await ReportService(db).update_item(
                caller, report.id, new_item.id, item_input(2000, ExpenseCategory.SUPPLIES, reimbursable=False), 2
            )
        assert updated.version == 3
        assert updated.total_amount_cents == 3250
        assert updated.total_reimbursable_cents == 1250

        async with session_factory() as db:
            removed = await ReportService(db).remove_item(caller, report.id, new_item.id, 3)
        assert removed.version == 4
        assert removed.total_amount_cents == 1250
        assert len(removed.items) == 1

        trail = await fetch_trail("expense_report", report.id)
        assert [entry.event_type for entry in trail] == ["item_added", "item_updated", "item_removed"]
        assert trail[1].old_value["item"]["amount_cents"] == 3000
        assert trail[1].new_value["item"]["amount_cents"] == 2000

    @pytest.mark.asyncio
    async def test_only_owner_edits(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"])

        async with session_factory() as db:
            with pytest.raises(AuthorizationException):
                await ReportService(db).add_item(caller_for(people["manager"]), report.id, item_input(), 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ReportStatus.SUBMITTED, ReportStatus.MANAGER_APPROVED, ReportStatus.DENIED])
    async def test_items_frozen_outside_draft(self, status, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=status)

        async with session_factory() as db:
            with pytest.raises(ConflictException) as exc_info:
                await ReportService(db).add_item(caller_for(people["employee"]), report.id, item_input(), 1)

        assert exc_info.value.code == ErrorCode.CANNOT_MODIFY

    @pytest.mark.asyncio
    async def test_items_editable_in_needs_changes(self, people, make_report, session_factory, caller_for):
        report = await make_report(people["employee"], status=ReportStatus.NEEDS_CHANGES)

        async with session_factory() as db:
            updated = await ReportService(db).add_item(caller_for(people["employee"]), report.id, item_input(500), 1)

        assert updated.version == 2
        assert updated.status == ReportStatus.NEEDS_CHANGES


# =============================================================================
# UNEXPECTED FAILURES
# =============================================================================

class TestUnexpectedFailures:
    """Non-domain errors during a draft mutation still leave an audit entry."""

    @pytest.mark.asyncio
    async def test_failed_item_edit_is_audited(
        self, monkeypatch, people, make_report, session_factory, caller_for, fetch_report, fetch_trail,
    ):
        report = await make_report(people["employee"])

        async def broken_save(self, report, expected_version=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ReportStore, "save", broken_save)

        async with session_factory() as db:
            with pytest.raises(RuntimeError):
                await ReportService(db).add_item(caller_for(people["employee"]), report.id, item_input(500), 1)

        trail = await fetch_trail("expense_report", report.id)
        assert [entry.event_type for entry in trail] == [AuditEvent.MUTATION_FAILED]
        assert trail[0].new_value == {
            "operation": AuditEvent.ITEM_ADDED,
            "error": "RuntimeError",
            "message": "disk full",
        }
        assert trail[0].performed_by == people["employee"].id
        stored = await fetch_report(report.id)
        assert stored.version == 1
        assert len(stored.items) == 1

    @pytest.mark.asyncio
    async def test_failed_create_is_audited(self, monkeypatch, people, session_factory, caller_for):
        def broken_add(self, report):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(ReportStore, "add", broken_add)

        async with session_factory() as db:
            with pytest.raises(RuntimeError):
                await ReportService(db).create_report(
                    caller_for(people["employee"]),
                    ExpenseReportCreate(
                        reporting_period_start=date(2024, 4, 1),
                        reporting_period_end=date(2024, 4, 30),
                        items=[item_input(1250)],
                    ),
                )

        async with session_factory() as db:
            entries = (await db.execute(select(AuditLogEntry))).scalars().all()
            reports = (await db.execute(select(ExpenseReport))).scalars().all()

        assert [entry.event_type for entry in entries] == [AuditEvent.MUTATION_FAILED]
        assert entries[0].new_value["operation"] == AuditEvent.REPORT_CREATED
        assert entries[0].new_value["error"] == "RuntimeError"
        assert reports == []

    @pytest.mark.asyncio
    async def test_domain_errors_are_not_audited_as_failures(
        self, people, make_report, session_factory, caller_for, fetch_trail,
    ):
        report = await make_report(people["employee"])

        async with session_factory() as db:
            with pytest.raises(VersionConflictException):
                await ReportService(db).add_item(caller_for(people["employee"]), report.id, item_input(500), 4)

        assert await fetch_trail("expense_report", report.id) == []


# =============================================================================
# STALE VERSIONS
# =============================================================================

class TestStaleVersions:
    """A caller holding an old version is told to reload."""

    @pytest.mark.asyncio
    async def test_stale_item_edit(self, people, make_report, session_factory, caller_for, fetch_report):
        report = await make_report(people["employee"])
        caller = caller_for(people["employee"])

        async with session_factory() as db:
            await ReportService(db).add_item(caller, report.id, item_input(500), 1)

        async with session_factory() as db:
            with pytest.raises(VersionConflictException) as exc_info:
                await ReportService(db).add_item(caller, report.id, item_input(700), 1)

        assert exc_info.value.code == ErrorCode.VERSION_CONFLICT
        details = exc_info.value.details
        assert details["resource_id"] == str(report.id)
        assert details["expected_version"] == 1
        assert details["current_version"] == 2
        stored = await fetch_report(report.id)
        assert stored.version == 2
        assert stored.total_amount_cents == 1750

    @pytest.mark.asyncio
    async def test_stale_transition(self, people, policy, make_report, session_factory, caller_for):
        report = await make_report(people["employee"])
        caller = caller_for(people["employee"])

        async with session_factory() as db:
            await ReportService(db).add_item(caller, report.id, item_input(500, day=5), 1)

        async with session_factory() as db:
            with pytest.raises(VersionConflictException):
                await WorkflowService(db).transition(
                    caller, TransitionRequest(report_id=report.id, action=WorkflowAction.SUBMIT, expected_version=1)
                )


# =============================================================================
# RACES
# =============================================================================

class TestConcurrentWriters:
    """Two writers that read the same version; the database picks one."""

    @pytest.mark.asyncio
    async def test_concurrent_submits(self, people, policy, make_report, session_factory, caller_for, fetch_report, fetch_trail):
        report = await make_report(people["employee"])
        caller = caller_for(people["employee"])

        async def submit():
            async with session_factory() as db:
                return await WorkflowService(db).transition(
                    caller, TransitionRequest(report_id=report.id, action=WorkflowAction.SUBMIT, expected_version=1)
                )

        results = await asyncio.gather(submit(), submit(), return_exceptions=True)

        successes = [result for result in results if not isinstance(result, Exception)]
        conflicts = [result for result in results if isinstance(result, VersionConflictException)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert conflicts[0].details["resource_id"] == str(report.id)
        assert conflicts[0].details["expected_version"] == 1

        stored = await fetch_report(report.id)
        assert stored.status == ReportStatus.SUBMITTED
        assert stored.version == 2
        assert len(await fetch_trail("expense_report", report.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_decisions(self, people, make_report, session_factory, caller_for, fetch_report):
        report = await make_report(people["employee"], status=ReportStatus.SUBMITTED)
        manager = caller_for(people["manager"])

        async def decide(action, comment=None):
            async with session_factory() as db:
                return await WorkflowService(db).transition(
                    manager,
                    TransitionRequest(report_id=report.id, action=action, expected_version=1, comment=comment),
                )

        results = await asyncio.gather(
            decide(WorkflowAction.APPROVE),
            decide(WorkflowAction.DENY, comment="Duplicate of March report"),
            return_exceptions=True,
        )

        winners = [result for result in results if not isinstance(result, Exception)]
        assert len(winners) == 1
        assert sum(isinstance(result, VersionConflictException) for result in results) == 1

        stored = await fetch_report(report.id)
        assert stored.status == winners[0].status
        assert len(stored.approvals) == 1

    @pytest.mark.asyncio
    async def test_concurrent_item_edits(self, people, make_report, session_factory, caller_for, fetch_report):
        report = await make_report(people["employee"])
        caller = caller_for(people["employee"])

        async def add(amount):
            async with session_factory() as db:
                return await ReportService(db).add_item(caller, report.id, item_input(amount), 1)

        results = await asyncio.gather(add(100), add(200), return_exceptions=True)

        assert sum(isinstance(result, VersionConflictException) for result in results) == 1
        stored = await fetch_report(report.id)
        assert stored.version == 2
        assert len(stored.items) == 2
        assert stored.total_amount_cents == sum(item.amount_cents for item in stored.items)
