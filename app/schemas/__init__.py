"""
Expense Lifecycle - Schemas Package

Pydantic schemas for request/response validation.
"""

from app.schemas.auth import CallerClaim
from app.schemas.audit import AuditEntryResponse, AuditTrailResponse, ChainVerificationResponse
from app.schemas.expense import (
    ApprovalRequest,
    ApprovalResponse,
    ExpenseItemInput,
    ExpenseItemResponse,
    ExpenseReportCreate,
    ExpenseReportResponse,
    FinalizeRequest,
    FinanceRejectRequest,
    ItemMutationRequest,
    PolicyEvaluationResponse,
    ReceiptInput,
    ReceiptResponse,
    ReportEnvelope,
    ReportListResponse,
    VersionedRequest,
)
from app.schemas.ledger import (
    BatchDetail,
    BatchEnvelope,
    BatchListResponse,
    BatchSummary,
    FinalizeResponse,
    JournalLineResponse,
)

__all__ = [
    "CallerClaim",
    "AuditEntryResponse",
    "AuditTrailResponse",
    "ChainVerificationResponse",
    "ApprovalRequest",
    "ApprovalResponse",
    "ExpenseItemInput",
    "ExpenseItemResponse",
    "ExpenseReportCreate",
    "ExpenseReportResponse",
    "FinalizeRequest",
    "FinanceRejectRequest",
    "ItemMutationRequest",
    "PolicyEvaluationResponse",
    "ReceiptInput",
    "ReceiptResponse",
    "ReportEnvelope",
    "ReportListResponse",
    "VersionedRequest",
    "BatchDetail",
    "BatchEnvelope",
    "BatchListResponse",
    "BatchSummary",
    "FinalizeResponse",
    "JournalLineResponse",
]
