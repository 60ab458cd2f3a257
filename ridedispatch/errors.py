"""
Engine error taxonomy and the HTTP handlers that render it.

Every error that reaches a caller carries a stable `error_code` so that
clients can tell a stale accept apart from a malformed request.
"""

from typing import Any, Dict

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Base engine exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(DispatchError):
    """Malformed input, rejected before any mutation."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class NotFound(DispatchError):
    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id},
        )


class Forbidden(DispatchError):
    """The acting user does not own the ride or offer."""

    def __init__(self, message: str = "actor may not perform this operation", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_FORBIDDEN",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class ConflictingState(DispatchError):
    """Illegal transition, stale accept or an offer that is already resolved.

    State is left unchanged; the caller should re-fetch and decide again.
    """

    def __init__(self, message: str, current: str | None = None, details: Dict[str, Any] = None):
        details = dict(details or {})
        if current is not None:
            details["current_status"] = current
        super().__init__(
            message=message,
            error_code="ERR_CONFLICTING_STATE",
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class NoEligibleDrivers(DispatchError):
    """Ranking came back empty. Handled by the retry policy."""

    def __init__(self, ride_id: str):
        super().__init__(
            message=f"no eligible drivers for ride {ride_id}",
            error_code="ERR_NO_ELIGIBLE_DRIVERS",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"ride_id": ride_id},
        )


class ExhaustedRetries(DispatchError):
    """All dispatch rounds failed; the ride is cancelled by the system."""

    def __init__(self, ride_id: str, attempts: int):
        super().__init__(
            message="no drivers available",
            error_code="ERR_NO_DRIVERS_AVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"ride_id": ride_id, "attempts": attempts},
        )


# Exception handlers

async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("dispatch_error: path=%s code=%s message=%s", request.url.path, exc.error_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {"errors": jsonable_errors(exc.errors())},
        },
    )


def jsonable_errors(errors) -> list:
    # pydantic puts the raw exception object under "ctx"; inputs may hold NaN
    cleaned = []
    for err in errors:
        err = dict(err)
        err.pop("input", None)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        cleaned.append(err)
    return cleaned
