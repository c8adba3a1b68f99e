"""
Expense Lifecycle - Caller Identity

The identity claim arrives as a bearer token minted by the identity
provider. The engine trusts the claim as given and enforces ownership and
role guards against it.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.employee import EmployeeRole


class CallerClaim(BaseModel):
    """Who is calling, plus request context recorded on audit entries."""
    model_config = ConfigDict(frozen=True)

    employee_id: UUID
    role: EmployeeRole
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_reviewer(self) -> bool:
        return self.role in (EmployeeRole.MANAGER, EmployeeRole.FINANCE, EmployeeRole.ADMIN)
