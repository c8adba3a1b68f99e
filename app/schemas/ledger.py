"""
Expense Lifecycle - Ledger Export Schemas

Pydantic schemas for finance finalization and batch responses.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.ledger import BatchStatus
from app.schemas.expense import ExpenseReportResponse


class JournalLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_number: int
    report_id: UUID
    expense_item_id: UUID
    gl_account: str
    amount_cents: int
    currency: str
    department: Optional[str] = None
    memo: Optional[str] = None
    tax_code: Optional[str] = None


class BatchSummary(BaseModel):
    """Batch row as listed for finance."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_reference: str
    report_count: int
    total_amount_cents: int
    status: BatchStatus
    attempt_count: int
    ledger_reference: Optional[str] = None
    last_error: Optional[str] = None
    finalized_at: datetime
    exported_at: Optional[datetime] = None


class BatchDetail(BaseModel):
    """Batch with its journal lines."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_reference: str
    status: BatchStatus
    attempt_count: int
    submission_timed_out: bool
    ledger_reference: Optional[str] = None
    last_error: Optional[str] = None
    finalized_at: datetime
    exported_at: Optional[datetime] = None
    journal_lines: List[JournalLineResponse] = Field(default_factory=list)


class BatchListResponse(BaseModel):
    batches: List[BatchSummary]
    total: int


class FinalizeResponse(BaseModel):
    """Finalized reports and the batch created for them (None if nothing was eligible)."""
    reports: List[ExpenseReportResponse]
    batch: Optional[BatchDetail] = None


class BatchEnvelope(BaseModel):
    batch: BatchDetail
