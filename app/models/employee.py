"""
Expense Lifecycle - Employee Directory Model

Read-only projection of the HR directory. The lifecycle engine uses it to
resolve the reporting line (manager over owner) and the department posted on
journal lines; directory maintenance happens elsewhere.
"""

import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import ForeignKey, String, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class EmployeeRole(str, Enum):
    """Caller roles carried in the identity claim."""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    FINANCE = "finance"
    ADMIN = "admin"


class Employee(BaseModel):
    """Directory entry for a person who can own or review expense reports."""

    __tablename__ = "employees"

    hr_identifier: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    role: Mapped[EmployeeRole] = mapped_column(
        SQLEnum(EmployeeRole, name="employee_role", values_callable=lambda e: [m.value for m in e]),
        default=EmployeeRole.EMPLOYEE,
        nullable=False,
    )
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
