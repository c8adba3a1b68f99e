"""
Expense Lifecycle - Expense Report Models

Expense reports, their line items, receipt references and approval decisions.
Supports:
- Closed status and category enums
- Optimistic locking through the report ``version`` column
- Report totals kept in integer minor units
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel, JSONType

if TYPE_CHECKING:
    from app.models.employee import Employee


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ReportStatus(str, Enum):
    """Expense report lifecycle states."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    MANAGER_APPROVED = "manager_approved"
    NEEDS_CHANGES = "needs_changes"
    DENIED = "denied"
    FINANCE_FINALIZED = "finance_finalized"


class ExpenseCategory(str, Enum):
    """Closed set of expense categories."""
    AIRFARE = "airfare"
    LODGING = "lodging"
    MEAL = "meal"
    GROUND_TRANSPORT = "ground_transport"
    MILEAGE = "mileage"
    SUPPLIES = "supplies"
    OTHER = "other"


class ApprovalDecision(str, Enum):
    """Reviewer decisions recorded against a report."""
    APPROVED = "approved"
    DENIED = "denied"
    NEEDS_CHANGES = "needs_changes"


# ===========================================
# EXPENSE REPORT
# ===========================================

class ExpenseReport(BaseModel):
    """
    Expense report owned by one employee for one reporting period.

    ``version`` starts at 1 and is bumped by the ORM on every UPDATE; the
    UPDATE statement carries ``WHERE version = <read version>`` so a
    concurrent writer surfaces as ``StaleDataError``.
    """

    __tablename__ = "expense_reports"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Period
    reporting_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    reporting_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # Amounts (minor units)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_reimbursable_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Status
    status: Mapped[ReportStatus] = mapped_column(
        SQLEnum(ReportStatus, name="report_status", values_callable=_enum_values),
        default=ReportStatus.DRAFT,
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ledger export
    export_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("netsuite_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Relationships
    employee: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    items: Mapped[List["ExpenseItem"]] = relationship(
        "ExpenseItem",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="ExpenseItem.position",
        lazy="selectin",
    )
    approvals: Mapped[List["Approval"]] = relationship(
        "Approval",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="Approval.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def recalculate_totals(self) -> None:
        """Recompute totals from the current items."""
        self.total_amount_cents = sum(item.amount_cents for item in self.items)
        self.total_reimbursable_cents = sum(
            item.amount_cents for item in self.items if item.reimbursable
        )

    @property
    def has_policy_exceptions(self) -> bool:
        return any(item.is_policy_exception for item in self.items)


# ===========================================
# EXPENSE ITEM
# ===========================================

class ExpenseItem(BaseModel):
    """Single line on an expense report."""

    __tablename__ = "expense_items"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("expense_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(
        SQLEnum(ExpenseCategory, name="expense_category", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reimbursable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), default="personal_card", nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attendees: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    distance_miles: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    gl_account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Set by the policy engine on submit / resubmit
    is_policy_exception: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    policy_exception_reasons: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    report: Mapped["ExpenseReport"] = relationship("ExpenseReport", back_populates="items")
    receipts: Mapped[List["Receipt"]] = relationship(
        "Receipt",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="Receipt.created_at",
        lazy="selectin",
    )


# ===========================================
# RECEIPT
# ===========================================

class Receipt(BaseModel):
    """Metadata for a receipt file held by the storage service."""

    __tablename__ = "receipts"

    expense_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("expense_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_key: Mapped[str] = mapped_column(String(500), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )

    item: Mapped["ExpenseItem"] = relationship("ExpenseItem", back_populates="receipts")


# ===========================================
# APPROVAL
# ===========================================

class Approval(BaseModel):
    """Reviewer decision (manager or finance) on a report."""

    __tablename__ = "approvals"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("expense_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    decision: Mapped[ApprovalDecision] = mapped_column(
        SQLEnum(ApprovalDecision, name="approval_decision", values_callable=_enum_values),
        nullable=False,
    )
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    override_justification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    report: Mapped["ExpenseReport"] = relationship("ExpenseReport", back_populates="approvals")
