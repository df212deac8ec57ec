"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        # Create the problem details object
        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        # Add extensions
        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )

    @property
    def code(self) -> Optional[str]:
        """Application-specific error code, when one was assigned."""
        return self.problem_details.get("code")


class ValidationError(ProblemDetailsException):
    """Exception for request validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri="https://example.com/problems/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri="https://example.com/problems/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_permissions: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_permissions:
            extensions["required_permissions"] = required_permissions

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri="https://example.com/problems/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri="https://example.com/problems/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri="https://example.com/problems/resource-conflict",
            instance=instance,
            extensions=extensions,
        )


class InternalServerError(ProblemDetailsException):
    """Exception for internal server errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred while processing the request",
        error_id: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not error_id:
            error_id = str(uuid.uuid4())

        extensions = {
            "error_id": error_id,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

        super().__init__(
            status_code=500,
            title="Internal Server Error",
            detail=detail,
            type_uri="https://example.com/problems/internal-server-error",
            instance=instance,
            extensions=extensions,
        )


# Business logic exceptions

class InvalidStateError(ConflictError):
    """Exception when a transition is not legal from the resource's current status."""

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        current_status: str,
        detail: Optional[str] = None,
    ):
        if not detail:
            detail = f"Operation not allowed for {resource_type} {resource_id} in status '{current_status}'"

        super().__init__(
            detail=detail,
            conflicting_resource={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "current_status": current_status,
            }
        )
        self.problem_details.update({
            "code": "INVALID_STATE",
            "retryable": False
        })


class InvalidPinFormatError(ValidationError):
    """Exception when a submitted pickup PIN is not exactly four digits."""

    def __init__(self):
        super().__init__(
            detail="PIN must be exactly 4 digits",
            errors={"pin": "must match ^[0-9]{4}$"}
        )
        self.problem_details.update({
            "code": "INVALID_PIN_FORMAT",
            "retryable": False
        })


class PinExpiredError(ProblemDetailsException):
    """Exception when a pickup PIN is past its validity window."""

    def __init__(self, booking_id: str, expired_at: datetime):
        super().__init__(
            status_code=410,
            title="Pickup PIN Expired",
            detail=f"Pickup PIN for booking {booking_id} expired at {expired_at.isoformat()}Z",
            type_uri="https://example.com/problems/pickup-pin-expired",
            extensions={
                "code": "PIN_EXPIRED",
                "retryable": False,
                "booking_id": booking_id,
                "expired_at": expired_at.isoformat() + "Z",
            },
        )


class PinLockedError(ProblemDetailsException):
    """Exception when pickup verification is locked after too many failed attempts."""

    def __init__(self, booking_id: str, locked_until: datetime, now: datetime):
        retry_after = max(1, int((locked_until - now).total_seconds() + 0.999))
        minutes = (retry_after + 59) // 60

        super().__init__(
            status_code=429,
            title="Pickup PIN Locked",
            detail=(
                f"Too many failed attempts. Please try again in "
                f"{minutes} minute{'s' if minutes != 1 else ''}"
            ),
            type_uri="https://example.com/problems/pickup-pin-locked",
            extensions={
                "code": "PIN_LOCKED",
                "retryable": True,
                "booking_id": booking_id,
                "locked_until": locked_until.isoformat() + "Z",
                "retry_after_seconds": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )


class PinMismatchError(ProblemDetailsException):
    """Exception when a submitted pickup PIN does not match the issued one."""

    def __init__(
        self,
        booking_id: str,
        attempts_remaining: int,
        locked_until: Optional[datetime] = None,
    ):
        extensions: Dict[str, Any] = {
            "code": "PIN_MISMATCH",
            "retryable": attempts_remaining > 0,
            "booking_id": booking_id,
            "attempts_remaining": attempts_remaining,
        }
        if locked_until:
            extensions["locked_until"] = locked_until.isoformat() + "Z"

        super().__init__(
            status_code=401,
            title="Invalid Pickup PIN",
            detail=f"Invalid PIN. {attempts_remaining} attempt{'s' if attempts_remaining != 1 else ''} remaining",
            type_uri="https://example.com/problems/pickup-pin-mismatch",
            extensions=extensions,
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body and parameter validation failures as a 422 problem with violations."""
    violations = [
        {
            "path": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=422,
        content={
            "type": "https://example.com/problems/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "The request data failed validation",
            "instance": str(request.url),
            "violations": violations,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    The full error is logged server-side; the caller only receives the error ID.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception while processing request",
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        },
        exc_info=exc,
    )

    problem_details = {
        "type": "https://example.com/problems/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": str(request.url),
        "error_id": error_id,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
    )
