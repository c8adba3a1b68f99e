"""
Expense Lifecycle - Policy Reference Data

Spending caps and mileage reimbursement rates. Both are effective-dated so a
report can be validated against the rules that applied on each expense date.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Date, Numeric, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel
from app.models.expense import ExpenseCategory


class CapLimitType(str, Enum):
    """How a cap is applied."""
    PER_DIEM = "per_diem"
    PER_ITEM = "per_item"


class PolicyCap(BaseModel):
    """
    Spending cap for a category over a date range.

    ``category`` NULL makes the cap a default for every category;
    ``active_to`` NULL makes it open-ended.
    """

    __tablename__ = "policy_caps"

    policy_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    category: Mapped[Optional[ExpenseCategory]] = mapped_column(
        SQLEnum(ExpenseCategory, name="expense_category", values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    limit_type: Mapped[CapLimitType] = mapped_column(
        SQLEnum(CapLimitType, name="cap_limit_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active_from: Mapped[date] = mapped_column(Date, nullable=False)
    active_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


class MileageRate(BaseModel):
    """Reimbursement rate per mile, effective from a date until superseded."""

    __tablename__ = "mileage_rates"

    effective_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    rate_cents_per_mile: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    source_reference: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
