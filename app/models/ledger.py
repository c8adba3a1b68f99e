"""
Expense Lifecycle - Ledger Export Models

A NetSuite batch groups finance-finalized reports for one export; each
expense item becomes exactly one journal line in the batch.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel, JSONType


class BatchStatus(str, Enum):
    """Export lifecycle of a batch."""
    PENDING = "pending"
    SUBMITTING = "submitting"
    EXPORTED = "exported"
    FAILED = "failed"


class NetsuiteBatch(BaseModel):
    """
    Group of finalized reports exported to the ledger in one submission.

    ``claim_token``/``claimed_at`` record which orchestrator run currently owns
    the batch; only the owner may record the outcome.
    """

    __tablename__ = "netsuite_batches"

    batch_reference: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    finalized_by: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
    )
    finalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus, name="batch_status", values_callable=lambda e: [m.value for m in e]),
        default=BatchStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    submission_timed_out: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    exported_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ledger_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ledger_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    journal_lines: Mapped[List["JournalLine"]] = relationship(
        "JournalLine",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="JournalLine.line_number",
        lazy="selectin",
    )


class JournalLine(BaseModel):
    """GL posting derived from a single expense item."""

    __tablename__ = "journal_lines"
    __table_args__ = (
        UniqueConstraint("batch_id", "line_number", name="uq_journal_lines_batch_line"),
        UniqueConstraint("batch_id", "expense_item_id", name="uq_journal_lines_batch_item"),
    )

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("netsuite_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("expense_reports.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    expense_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("expense_items.id", ondelete="RESTRICT"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    tax_code: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    batch: Mapped["NetsuiteBatch"] = relationship("NetsuiteBatch", back_populates="journal_lines")
