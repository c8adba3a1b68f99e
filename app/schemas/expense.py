"""
Expense Lifecycle - Expense Report Schemas

Pydantic schemas shared by the expense, approval and finance routers.
Business rules (amount > 0, dates inside the period, receipt rules) are left
to the policy engine so they come back as field-path errors.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.expense import ApprovalDecision, ExpenseCategory, ReportStatus


# ===========================================
# REQUEST SCHEMAS
# ===========================================

class ReceiptInput(BaseModel):
    """Reference to a receipt already uploaded to storage."""
    file_key: str = Field(..., max_length=500)
    file_name: str = Field(..., max_length=255)
    mime_type: str = Field("", max_length=100)
    size_bytes: int


class ExpenseItemInput(BaseModel):
    """Schema for one expense line."""
    expense_date: date
    category: ExpenseCategory
    amount_cents: int = Field(..., description="Amount in minor units")
    reimbursable: bool = True
    payment_method: str = Field("personal_card", max_length=50)
    description: Optional[str] = None
    attendees: Optional[str] = None
    location: Optional[str] = Field(None, max_length=200)
    distance_miles: Optional[Decimal] = Field(None, description="Required for mileage")
    gl_account_code: Optional[str] = Field(None, max_length=20)
    receipts: List[ReceiptInput] = Field(default_factory=list)


class ExpenseReportCreate(BaseModel):
    """Schema for creating a draft report."""
    reporting_period_start: date
    reporting_period_end: date
    currency: str = Field("USD", max_length=3)
    items: List[ExpenseItemInput] = Field(default_factory=list)


class VersionedRequest(BaseModel):
    """Every mutating call carries the version the caller last read."""
    version: int = Field(..., ge=1)


class ItemMutationRequest(ExpenseItemInput):
    version: int = Field(..., ge=1)


class ApprovalRequest(BaseModel):
    """Manager decision on a submitted report."""
    decision: ApprovalDecision
    comment: Optional[str] = None
    override_justification: Optional[str] = None
    version: int = Field(..., ge=1)


class FinanceRejectRequest(BaseModel):
    comment: Optional[str] = None
    version: int = Field(..., ge=1)


class FinalizeRequest(BaseModel):
    """Finance finalization of manager-approved reports."""
    report_ids: List[UUID] = Field(default_factory=list)
    versions: Dict[UUID, int] = Field(
        default_factory=dict,
        description="Version last read for each report id",
    )


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_key: str
    file_name: str
    mime_type: str
    size_bytes: int


class ExpenseItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    expense_date: date
    category: ExpenseCategory
    amount_cents: int
    reimbursable: bool
    payment_method: str
    description: Optional[str] = None
    attendees: Optional[str] = None
    location: Optional[str] = None
    distance_miles: Optional[Decimal] = None
    gl_account_code: Optional[str] = None
    is_policy_exception: bool
    policy_exception_reasons: Optional[List[str]] = None
    receipts: List[ReceiptResponse] = Field(default_factory=list)


class ApprovalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    approver_id: UUID
    role: str
    decision: ApprovalDecision
    comment: Optional[str] = None
    override_justification: Optional[str] = None
    created_at: datetime


class ExpenseReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    employee_id: UUID
    reporting_period_start: date
    reporting_period_end: date
    currency: str
    status: ReportStatus
    version: int
    total_amount_cents: int
    total_reimbursable_cents: int
    submitted_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    export_batch_id: Optional[UUID] = None
    items: List[ExpenseItemResponse] = Field(default_factory=list)
    approvals: List[ApprovalResponse] = Field(default_factory=list)


class ReportEnvelope(BaseModel):
    report: ExpenseReportResponse


class ReportListResponse(BaseModel):
    reports: List[ExpenseReportResponse]
    total: int


class PolicyEvaluationResponse(BaseModel):
    """Policy engine findings for the report as it stands."""
    is_valid: bool
    errors: Dict[str, List[str]] = Field(default_factory=dict)
    exceptions: Dict[str, List[str]] = Field(default_factory=dict)
    exception_items: List[int] = Field(default_factory=list)
