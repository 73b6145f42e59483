"""
API Errors
==========

Every error the server returns has the same JSON body:

    {"error_code": "ALREADY_RUNNING", "message": "...", "details": {...}}

Route handlers raise either an APIError subclass defined here or one of the
scheduler's own errors from automode.errors; the handlers registered by
register_exception_handlers() turn both into that body.

Error codes and their status:
- BAD_REQUEST (400): malformed project name
- FORBIDDEN (403): remote client while remote access is disabled
- NOT_FOUND (404): unknown project or feature
- CONFLICT (409): duplicate feature, dependency cycle, deleting a running feature
- ALREADY_RUNNING (409): loop or feature already running
- AT_CAPACITY (409): concurrency ceiling reached
- INVALID_TRANSITION (409): commit requested from the wrong status
- VALIDATION_ERROR (422): request body or dependency validation failed
- DATABASE_ERROR / INTERNAL_ERROR (500)
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from automode.errors import (
    AlreadyRunningError,
    AutoModeError,
    CapacityExceededError,
    FeatureNotFoundError,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)


class ErrorCode:
    """Machine-readable codes carried in ``error_code``."""

    BAD_REQUEST = "BAD_REQUEST"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    AT_CAPACITY = "AT_CAPACITY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def create_error_response(
    error_code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build the standard error body. ``details`` is omitted when empty."""
    body: dict[str, Any] = {"error_code": error_code, "message": message}
    if details:
        body["details"] = details
    return body


# =============================================================================
# API Exceptions
# =============================================================================


class APIError(Exception):
    """Base class for errors raised by route handlers."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_json_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=create_error_response(self.error_code, self.message, self.details),
        )


class NotFoundError(APIError):
    """A project directory or feature that does not exist, e.g. NotFoundError("project", "my-app")."""

    def __init__(self, resource: str, identifier: Any = None):
        if identifier is None:
            message = f"{resource.title()} not found"
        else:
            message = f"{resource.title()} '{identifier}' not found"
        details: dict[str, Any] = {"resource": resource}
        if identifier is not None:
            details["id"] = identifier
        super().__init__(ErrorCode.NOT_FOUND, message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(APIError):
    """
    The request collides with the current backlog.

    Raised for duplicate feature ids, dependency edits that would close a
    cycle and deleting a feature that is still running.
    """

    def __init__(self, field: str, value: Any, message: str):
        super().__init__(
            ErrorCode.CONFLICT,
            message,
            status.HTTP_409_CONFLICT,
            {"field": field, "value": str(value)[:100]},
        )


class ValidationError(APIError):
    """Validation that Pydantic cannot do alone, such as unknown dependency ids."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(
            ErrorCode.VALIDATION_ERROR, message, status.HTTP_422_UNPROCESSABLE_ENTITY, details
        )


class BadRequestError(APIError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.BAD_REQUEST, message, status.HTTP_400_BAD_REQUEST, details)


# =============================================================================
# Scheduler Errors
# =============================================================================

# Checked in order; unlisted AutoModeErrors become INTERNAL_ERROR
_SCHEDULER_ERRORS: list[tuple[type[AutoModeError], str, int]] = [
    (FeatureNotFoundError, ErrorCode.NOT_FOUND, status.HTTP_404_NOT_FOUND),
    (AlreadyRunningError, ErrorCode.ALREADY_RUNNING, status.HTTP_409_CONFLICT),
    (CapacityExceededError, ErrorCode.AT_CAPACITY, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, ErrorCode.INVALID_TRANSITION, status.HTTP_409_CONFLICT),
]


def _scheduler_error_details(exc: AutoModeError) -> dict[str, Any]:
    if isinstance(exc, CapacityExceededError):
        return {"limit": exc.limit, "running": exc.running}
    details: dict[str, Any] = {}
    feature_id = getattr(exc, "feature_id", None)
    if feature_id is not None:
        details["feature_id"] = feature_id
    if isinstance(exc, InvalidTransitionError):
        details["current"] = exc.current
        details["target"] = exc.target
    return details


def automode_error_to_api_error(exc: AutoModeError) -> APIError:
    """Translate a scheduler error into the APIError it is reported as."""
    details = _scheduler_error_details(exc)
    for error_type, error_code, status_code in _SCHEDULER_ERRORS:
        if isinstance(exc, error_type):
            return APIError(error_code, str(exc), status_code, details)
    logger.error("Unmapped scheduler error: %s", exc)
    return APIError(ErrorCode.INTERNAL_ERROR, str(exc), details=details)


# =============================================================================
# Handlers
# =============================================================================


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.to_json_response()


async def automode_error_handler(request: Request, exc: AutoModeError) -> JSONResponse:
    return automode_error_to_api_error(exc).to_json_response()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten Pydantic errors into ``details.errors`` with dotted field paths."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append({
            "field": field or "unknown",
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        })

    if len(errors) == 1:
        message = f"Validation error on field '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Validation failed with {len(errors)} errors"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(ErrorCode.VALIDATION_ERROR, message, {"errors": errors}),
    )


_HTTP_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.BAD_REQUEST,
    status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.CONFLICT,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap FastAPI's own HTTPExceptions (e.g. unknown routes) in the standard body."""
    error_code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(error_code, message),
    )


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Log the database error; clients only see a generic message."""
    logger.exception("Database error: %s", exc)

    if isinstance(exc, IntegrityError) and "UNIQUE constraint failed" in str(exc.orig):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=create_error_response(ErrorCode.CONFLICT, "Feature already exists"),
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(ErrorCode.DATABASE_ERROR, "A database error occurred"),
    )


def register_exception_handlers(app) -> None:
    """Install every handler above on ``app``."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(AutoModeError, automode_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)
