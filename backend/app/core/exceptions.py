"""
Custom exceptions and error handlers for consistent error responses.

Domain errors (safe to show to the caller) derive from AppException and
carry a stable error code. Anything else is an infrastructure failure and
is rendered as a generic 500 while the detail goes to the server log.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class TimingRestrictedError(AppException):
    """Raised when an operation is attempted outside its allowed time window."""

    def __init__(self, message: str, hours_until_departure: float = None):
        details = {}
        if hours_until_departure is not None:
            details["hours_until_departure"] = round(hours_until_departure, 2)
        super().__init__(
            message=message,
            error_code="ERR_TIMING_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class CapacityExceededError(AppException):
    """Raised when a reservation asks for more seats than the trip has left."""

    def __init__(self, requested: int, available: int):
        super().__init__(
            message=f"Not enough seats available ({available} available, {requested} requested)",
            error_code="ERR_CAPACITY_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"requested": requested, "available": available}
        )


class ImmutableReservationError(AppException):
    """Raised when a reservation can no longer be changed by the driver."""

    def __init__(self, message: str = "Cannot reject a paid passenger"):
        super().__init__(
            message=message,
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT
        )


class AlreadyCancelledError(AppException):
    """Raised when cancelling a reservation that is already closed."""

    def __init__(self, message: str = "This reservation has already been cancelled", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STATE_002",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class AlreadyExistsError(AppException):
    """Raised when a record that must be unique already exists."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STATE_003",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class InvalidStateError(AppException):
    """Raised when a trip/reservation/payment status precondition is not met."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STATE_004",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class TripNotCancellableError(AppException):
    """Raised when the parent trip is already completed or cancelled."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="ERR_STATE_005",
            status_code=status.HTTP_409_CONFLICT
        )


class ValidationFailedError(AppException):
    """Raised for malformed or contradictory input."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class DependencyUnavailableError(AppException):
    """Raised when a collaborator (redis, notification sender) is down."""

    def __init__(self, dependency: str, message: str = None):
        super().__init__(
            message=message or f"{dependency} is unavailable",
            error_code="ERR_DEPENDENCY_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"dependency": dependency}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled exception on %s %s: %s", request.method, request.url.path, type(exc).__name__
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
