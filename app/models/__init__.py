"""
Expense Lifecycle - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin
from app.models.employee import Employee, EmployeeRole
from app.models.expense import (
    ExpenseReport,
    ExpenseItem,
    Receipt,
    Approval,
    ReportStatus,
    ExpenseCategory,
    ApprovalDecision,
)
from app.models.policy import PolicyCap, MileageRate, CapLimitType
from app.models.ledger import NetsuiteBatch, JournalLine, BatchStatus
from app.models.audit import AuditLogEntry, AuditEvent, AuditLogImmutableError

__all__ = [
    "BaseModel",
    "TimestampMixin",
    # Directory
    "Employee",
    "EmployeeRole",
    # Expense Reports
    "ExpenseReport",
    "ExpenseItem",
    "Receipt",
    "Approval",
    "ReportStatus",
    "ExpenseCategory",
    "ApprovalDecision",
    # Policy
    "PolicyCap",
    "MileageRate",
    "CapLimitType",
    # Ledger Export
    "NetsuiteBatch",
    "JournalLine",
    "BatchStatus",
    # Audit
    "AuditLogEntry",
    "AuditEvent",
    "AuditLogImmutableError",
]
