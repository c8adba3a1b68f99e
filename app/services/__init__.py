"""
Expense Lifecycle - Services Package

Business logic services.
"""

from app.services.audit_service import AuditService, ChainVerification
from app.services.batch_export_service import BatchExportService, ExportRetryConfig
from app.services.finance_service import FinanceService, FinalizeResult
from app.services.ledger_client import (
    LedgerClient,
    LedgerPermanentError,
    LedgerTransientError,
    NetSuiteLedgerClient,
    StubLedgerClient,
    get_ledger_client,
)
from app.services.policy_engine import PolicyRules, ValidationResult, validate_item, validate_report
from app.services.report_service import ReportService
from app.services.report_store import ReportStore
from app.services.workflow_service import TransitionRequest, WorkflowAction, WorkflowService

__all__ = [
    "AuditService",
    "ChainVerification",
    "BatchExportService",
    "ExportRetryConfig",
    "FinanceService",
    "FinalizeResult",
    "LedgerClient",
    "LedgerPermanentError",
    "LedgerTransientError",
    "NetSuiteLedgerClient",
    "StubLedgerClient",
    "get_ledger_client",
    "PolicyRules",
    "ValidationResult",
    "validate_item",
    "validate_report",
    "ReportService",
    "ReportStore",
    "TransitionRequest",
    "WorkflowAction",
    "WorkflowService",
]
