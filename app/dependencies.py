"""
Expense Lifecycle - FastAPI Dependencies

Shared dependencies for database sessions, caller identity and the ledger
client.

The caller is identified by a bearer JWT minted by the identity provider.
Its ``sub`` claim is the employee id and ``role`` the directory role; the
request's client address and user agent are attached for the audit trail.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.models.employee import EmployeeRole
from app.schemas.auth import CallerClaim
from app.services.ledger_client import LedgerClient, get_ledger_client
from app.utils.security import verify_access_token


# HTTP Bearer token security
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CallerClaim:
    """
    Resolve the caller claim from the Authorization header.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if not credentials:
        raise _unauthorized("Not authenticated")

    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise _unauthorized("Invalid or expired token")

    try:
        employee_id = uuid.UUID(str(payload.get("sub")))
        role = EmployeeRole(payload.get("role"))
    except ValueError:
        raise _unauthorized("Token does not carry a valid employee claim")

    return CallerClaim(
        employee_id=employee_id,
        role=role,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_ledger() -> LedgerClient:
    """Ledger client used by finance endpoints; overridden in tests."""
    return get_ledger_client()
