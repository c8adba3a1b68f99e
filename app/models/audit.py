"""
Expense Lifecycle - Audit Log Model

Append-only, hash-chained audit trail.

Each entry stores the hash of the previous entry for the same
(entity_type, entity_id) pair, so editing or removing any historical row is
detectable by replaying the chain.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.base import JSONType, utcnow


class AuditEvent:
    """Event types written to the audit trail."""
    REPORT_CREATED = "report_created"
    ITEM_ADDED = "item_added"
    ITEM_UPDATED = "item_updated"
    ITEM_REMOVED = "item_removed"
    STATUS_TRANSITION = "status_transition"
    TRANSITION_FAILED = "transition_failed"
    MUTATION_FAILED = "mutation_failed"
    BATCH_CREATED = "batch_created"
    BATCH_EXPORTED = "batch_exported"
    BATCH_EXPORT_FAILED = "batch_export_failed"
    BATCH_EXPORT_ERROR = "batch_export_error"
    BATCH_RELEASED = "batch_released"
    REPORT_BATCHED = "report_batched"
    REPORT_RELEASED = "report_released"


class AuditLogImmutableError(RuntimeError):
    """Raised when code attempts to modify or delete an audit row."""


class AuditLogEntry(Base):
    """
    Immutable audit log entry.

    This table should have no UPDATE or DELETE permissions.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_logs_entity_sequence"),
        Index("ix_audit_logs_entity_lookup", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Target
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    # Event
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    old_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Actor
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Chain
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<AuditLogEntry({self.entity_type}:{self.entity_id} #{self.sequence} {self.event_type})>"


@event.listens_for(AuditLogEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit entry {target.id} is immutable")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit entry {target.id} cannot be deleted")
