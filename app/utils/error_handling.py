"""
Error Handling Module for Expense Lifecycle

This module provides centralized error handling with:
- Custom exception hierarchy mirroring the workflow error taxonomy
- Standardized error responses
- Error logging
- Database and ledger service error handling
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Configure logging
logger = logging.getLogger("expense_lifecycle.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    GUARD_FAILED = "GUARD_FAILED"

    # Authentication/Authorization Errors (401/403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    TOKEN_INVALID = "TOKEN_INVALID"
    NOT_OWNER = "NOT_OWNER"
    NOT_MANAGER = "NOT_MANAGER"
    ROLE_REQUIRED = "ROLE_REQUIRED"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    REPORT_NOT_FOUND = "REPORT_NOT_FOUND"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    BATCH_NOT_FOUND = "BATCH_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    BATCH_BUSY = "BATCH_BUSY"

    # External Service Errors (502)
    LEDGER_TRANSIENT_ERROR = "LEDGER_TRANSIENT_ERROR"
    LEDGER_PERMANENT_ERROR = "LEDGER_PERMANENT_ERROR"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """
    Field-level validation failure.

    ``errors`` maps a field path (``items[0].receipts``, ``comment``) to the
    messages for that field and is returned to the caller unchanged.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Dict[str, List[str]]] = None,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        self.errors = errors or ({field: [message]} if field else {})
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )

    @classmethod
    def for_field(cls, field: str, message: str, code: ErrorCode = ErrorCode.GUARD_FAILED) -> "ValidationException":
        return cls(message=message, errors={field: [message]}, field=field, code=code)


class PolicyViolationException(ValidationException):
    """Hard policy errors block a submit-like transition"""

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__(
            message="Expense report has policy errors",
            errors=errors,
            code=ErrorCode.POLICY_VIOLATION,
        )


# ============================================================================
# Authentication / Authorization Exceptions
# ============================================================================

class AuthenticationException(AppException):
    """Base authentication exception"""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.UNAUTHORIZED,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class AuthorizationException(AppException):
    """Authorization denied exception"""

    def __init__(
        self,
        message: str = "Permission denied",
        required_permission: Optional[str] = None,
        code: ErrorCode = ErrorCode.FORBIDDEN,
    ):
        details = {}
        if required_permission:
            details["required_permission"] = required_permission
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with ID '{resource_id}' not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type},
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class VersionConflictException(ConflictException):
    """The caller's version token no longer matches the stored row"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        expected_version: Optional[int],
        current_version: Optional[int] = None,
    ):
        details = {"resource_id": str(resource_id), "expected_version": expected_version}
        if current_version is not None:
            details["current_version"] = current_version
        super().__init__(
            message=f"{resource_type} was modified by another request; reload and retry",
            resource_type=resource_type,
            code=ErrorCode.VERSION_CONFLICT,
            details=details,
        )


class TransitionException(ConflictException):
    """Requested action is not an edge out of the current state"""

    def __init__(self, current_status: str, action: str):
        super().__init__(
            message=f"Action '{action}' is not allowed from status '{current_status}'",
            resource_type="ExpenseReport",
            code=ErrorCode.INVALID_TRANSITION,
            details={"current_status": current_status, "action": action},
        )


# ============================================================================
# Ledger Export Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service error exception"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=_details,
            original_error=original_error,
        )


class ExportTransientException(ExternalServiceException):
    """Ledger export failed with a retryable error and attempts ran out"""

    def __init__(self, message: str, attempts: int, original_error: Optional[Exception] = None):
        super().__init__(
            service_name="ledger",
            message=f"Ledger export failed after {attempts} attempt(s): {message}",
            code=ErrorCode.LEDGER_TRANSIENT_ERROR,
            original_error=original_error,
            details={"attempts": attempts},
        )


class ExportPermanentException(ExternalServiceException):
    """Ledger rejected the batch; needs manual remediation"""

    def __init__(self, message: str, raw_response: Optional[Dict[str, Any]] = None):
        super().__init__(
            service_name="ledger",
            message=f"Ledger rejected the batch: {message}",
            code=ErrorCode.LEDGER_PERMANENT_ERROR,
            details={"raw_response": raw_response or {}},
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
    errors: Optional[Dict[str, List[str]]] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content: Dict[str, Any] = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details
    if errors is not None:
        content["errors"] = errors

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
        errors=getattr(exc, "errors", None),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic request validation errors as a field path map"""
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        # Drop the leading "body"/"query" location segment
        loc = [str(part) for part in error["loc"][1:]] or [str(part) for part in error["loc"]]
        field = _format_field_path(loc)
        errors.setdefault(field, []).append(error["msg"])

    logger.warning(
        f"ValidationError: {len(errors)} invalid field(s)",
        extra={"path": request.url.path, "method": request.method, "errors": errors},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        errors=errors,
    )


def _format_field_path(parts: List[str]) -> str:
    path = ""
    for part in parts:
        if part.isdigit():
            path += f"[{part}]"
        else:
            path += f".{part}" if path else part
    return path


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, StaleDataError):
        error_message = "Record was modified by another request; reload and retry"
        error_code = ErrorCode.VERSION_CONFLICT
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    # In production, don't expose internal error details
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "PolicyViolationException",

    # Auth
    "AuthenticationException",
    "AuthorizationException",

    # Resource
    "NotFoundException",
    "ConflictException",
    "VersionConflictException",
    "TransitionException",

    # Ledger
    "ExternalServiceException",
    "ExportTransientException",
    "ExportPermanentException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",
]
