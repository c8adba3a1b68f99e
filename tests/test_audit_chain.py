"""
Tests for the hash-chained audit trail.
"""

import uuid

import pytest
from sqlalchemy import delete, select, update

from app.models import Employee, EmployeeRole
from app.models.audit import AuditLogEntry, AuditLogImmutableError
from app.services.audit_service import (
    GENESIS_HASH,
    AuditService,
    compute_entry_hash,
    hashable_fields,
)
from app.services.workflow_service import TransitionRequest, WorkflowAction, WorkflowService


async def record_events(session_factory, entity_id, count, actor_id=None):
    async with session_factory() as db:
        audit = AuditService(db)
        for number in range(count):
            await audit.record(
                entity_type="expense_report",
                entity_id=entity_id,
                event_type="status_transition",
                actor_id=actor_id,
                old_value={"status": "draft", "step": number},
                new_value={"status": "submitted", "step": number + 1, "amount": 1250},
                ip_address="10.0.0.1",
                user_agent="pytest",
            )
        await db.commit()


async def verify(session_factory, entity_id):
    async with session_factory() as db:
        return await AuditService(db).verify_chain("expense_report", entity_id)


class TestChainConstruction:
    """Entries link to their predecessor within one entity."""

    @pytest.mark.asyncio
    async def test_entries_link_by_hash(self, session_factory, fetch_trail):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 3)

        trail = await fetch_trail("expense_report", entity_id)

        assert [entry.sequence for entry in trail] == [1, 2, 3]
        assert trail[0].previous_hash == GENESIS_HASH
        assert trail[1].previous_hash == trail[0].signature_hash
        assert trail[2].previous_hash == trail[1].signature_hash
        for entry in trail:
            assert entry.signature_hash == compute_entry_hash(hashable_fields(entry), entry.previous_hash)

    @pytest.mark.asyncio
    async def test_chains_are_per_entity(self, session_factory, fetch_trail):
        first, second = uuid.uuid4(), uuid.uuid4()
        await record_events(session_factory, first, 2)
        await record_events(session_factory, second, 1)

        trail = await fetch_trail("expense_report", second)

        assert [entry.sequence for entry in trail] == [1]
        assert trail[0].previous_hash == GENESIS_HASH

    @pytest.mark.asyncio
    async def test_audit_rolls_back_with_the_change(self, session_factory, fetch_trail):
        entity_id = uuid.uuid4()
        async with session_factory() as db:
            await AuditService(db).record("expense_report", entity_id, "status_transition", new_value={"a": 1})
            await db.rollback()

        assert await fetch_trail("expense_report", entity_id) == []

    @pytest.mark.asyncio
    async def test_transition_entries_verify(self, people, policy, make_report, session_factory, caller_for):
        report = await make_report(people["employee"])
        async with session_factory() as db:
            await WorkflowService(db).transition(
                caller_for(people["employee"]),
                TransitionRequest(report_id=report.id, action=WorkflowAction.SUBMIT, expected_version=1),
            )
        async with session_factory() as db:
            await WorkflowService(db).transition(
                caller_for(people["manager"]),
                TransitionRequest(
                    report_id=report.id, action=WorkflowAction.REQUEST_CHANGES, expected_version=2,
                    comment="Missing itemised receipt",
                ),
            )

        verification = await verify(session_factory, report.id)

        assert verification.is_valid
        assert verification.entries_checked == 2
        assert verification.to_dict()["broken_entries"] == []


class TestTamperDetection:
    """Editing stored rows breaks the chain from that entry onwards."""

    @pytest.mark.asyncio
    async def test_untouched_chain_is_valid(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 4)

        verification = await verify(session_factory, entity_id)

        assert verification.is_valid
        assert verification.entries_checked == 4

    @pytest.mark.asyncio
    async def test_edited_value_is_detected(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 4)

        # Bypass the ORM guard the way a direct SQL edit would
        async with session_factory() as db:
            await db.execute(
                update(AuditLogEntry.__table__)
                .where(AuditLogEntry.__table__.c.entity_id == str(entity_id))
                .where(AuditLogEntry.__table__.c.sequence == 2)
                .values(new_value={"status": "submitted", "step": 2, "amount": 99})
            )
            await db.commit()

        verification = await verify(session_factory, entity_id)

        assert not verification.is_valid
        assert [broken["sequence"] for broken in verification.broken_entries] == [2, 3, 4]
        assert verification.broken_entries[0]["reasons"] == ["signature_mismatch"]
        assert "previous_hash_mismatch" in verification.broken_entries[1]["reasons"]

    @pytest.mark.asyncio
    async def test_deleted_entry_is_detected(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 3)

        async with session_factory() as db:
            await db.execute(
                delete(AuditLogEntry.__table__)
                .where(AuditLogEntry.__table__.c.entity_id == str(entity_id))
                .where(AuditLogEntry.__table__.c.sequence == 2)
            )
            await db.commit()

        verification = await verify(session_factory, entity_id)

        assert not verification.is_valid
        assert verification.entries_checked == 2
        assert verification.broken_entries[0]["sequence"] == 3
        assert "sequence_gap" in verification.broken_entries[0]["reasons"]

    @pytest.mark.asyncio
    async def test_rehashed_entry_still_breaks_successor(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 3)

        # Forge entry 1 consistently; entry 2 still points at the old hash
        async with session_factory() as db:
            entry = (
                await db.execute(
                    select(AuditLogEntry)
                    .where(AuditLogEntry.entity_id == str(entity_id))
                    .where(AuditLogEntry.sequence == 1)
                )
            ).scalar_one()
            fields = hashable_fields(entry)
            fields["new_value"] = {"status": "approved"}
            forged = compute_entry_hash(fields, GENESIS_HASH)
            await db.execute(
                update(AuditLogEntry.__table__)
                .where(AuditLogEntry.__table__.c.id == entry.id)
                .values(new_value={"status": "approved"}, signature_hash=forged)
            )
            await db.commit()

        verification = await verify(session_factory, entity_id)

        assert [broken["sequence"] for broken in verification.broken_entries] == [2, 3]
        assert verification.broken_entries[0]["reasons"] == ["previous_hash_mismatch", "signature_mismatch"]


class TestImmutability:
    """The ORM refuses to update or delete audit rows."""

    @pytest.mark.asyncio
    async def test_orm_update_rejected(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 1)

        async with session_factory() as db:
            entry = (
                await db.execute(select(AuditLogEntry).where(AuditLogEntry.entity_id == str(entity_id)))
            ).scalar_one()
            entry.event_type = "edited"
            with pytest.raises(AuditLogImmutableError):
                await db.flush()
            await db.rollback()

    @pytest.mark.asyncio
    async def test_orm_delete_rejected(self, session_factory):
        entity_id = uuid.uuid4()
        await record_events(session_factory, entity_id, 1)

        async with session_factory() as db:
            entry = (
                await db.execute(select(AuditLogEntry).where(AuditLogEntry.entity_id == str(entity_id)))
            ).scalar_one()
            await db.delete(entry)
            with pytest.raises(AuditLogImmutableError):
                await db.flush()
            await db.rollback()


class TestAuditApi:
    """Trail and verification endpoints."""

    @pytest.mark.asyncio
    async def test_owner_reads_trail_and_verifies(self, client, people, policy, make_report, auth_headers):
        report = await make_report(people["employee"])
        headers = auth_headers(people["employee"])
        response = await client.post(
            f"/expenses/reports/{report.id}/submit", json={"version": 1}, headers=headers
        )
        assert response.status_code == 200

        trail = await client.get(f"/audit/expense_report/{report.id}", headers=headers)
        assert trail.status_code == 200
        entries = trail.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["event_type"] == "status_transition"
        assert entries[0]["previous_hash"] == GENESIS_HASH

        verification = await client.get(f"/audit/expense_report/{report.id}/verify", headers=headers)
        assert verification.status_code == 200
        assert verification.json()["is_valid"] is True
        assert verification.json()["entries_checked"] == 1

    @pytest.mark.asyncio
    async def test_unrelated_employee_cannot_read_trail(self, client, db_session, people, make_report, auth_headers):
        outsider = Employee(hr_identifier="HR-9999", full_name="Alex Kim", role=EmployeeRole.EMPLOYEE)
        db_session.add(outsider)
        await db_session.commit()
        report = await make_report(people["employee"])

        response = await client.get(f"/audit/expense_report/{report.id}", headers=auth_headers(outsider))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, client, people, auth_headers):
        response = await client.get(f"/audit/invoice/{uuid.uuid4()}", headers=auth_headers(people["finance"]))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_batch_trail_requires_finance(self, client, people, auth_headers):
        batch_id = uuid.uuid4()

        denied = await client.get(f"/audit/netsuite_batch/{batch_id}", headers=auth_headers(people["manager"]))
        allowed = await client.get(f"/audit/netsuite_batch/{batch_id}", headers=auth_headers(people["finance"]))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["entries"] == []
