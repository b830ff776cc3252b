import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from backfill.config.logging import get_logger

logger = get_logger(__name__)


class BackfillException(Exception):
    """Base exception for the background migrations engine."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(BackfillException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class MigrationError(BackfillException):
    """Base class for failures raised while scheduling or running migrations."""

    error_code = "MIGRATION_ERROR"


class TransientInfrastructureError(MigrationError):
    """Storage or queue temporarily unavailable. Retried with backoff."""

    error_code = "TRANSIENT_INFRASTRUCTURE"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class UnresolvableMigrationError(MigrationError):
    """No migration unit is registered under the requested name."""

    error_code = "UNRESOLVABLE_MIGRATION"

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"No migration registered with name: {name}",
            status.HTTP_404_NOT_FOUND,
            {"migration": name},
        )


class InvalidJobArgumentsError(MigrationError):
    """Job arguments do not fit the unit's contract or are not primitives."""

    error_code = "INVALID_ARGUMENTS"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class StaleRecordError(MigrationError):
    """The target record vanished between scheduling and execution."""

    error_code = "STALE_RECORD"

    def __init__(self, table: str, record_id: Any):
        self.table = table
        self.record_id = record_id
        super().__init__(
            f"Record {record_id} no longer exists in {table}",
            status.HTTP_404_NOT_FOUND,
            {"table": table, "record_id": record_id},
        )


class MalformedDataError(MigrationError):
    """Source data cannot be parsed. Units resolve this themselves."""

    error_code = "MALFORMED_DATA"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class DrainTimeoutError(MigrationError):
    """A drain gave up before the migration reported zero pending jobs."""

    error_code = "DRAIN_TIMEOUT"

    def __init__(self, name: str, pending: int, timeout_s: float):
        self.name = name
        self.pending = pending
        super().__init__(
            f"Drain of {name} timed out after {timeout_s}s with {pending} pending jobs",
            status.HTTP_409_CONFLICT,
            {"migration": name, "pending": pending, "timeout_s": timeout_s},
        )


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def backfill_exception_handler(
    request: Request, exc: BackfillException
) -> JSONResponse:
    """Handle engine specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Generate correlation ID for request tracking
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # Add to log context
        from backfill.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        # Add request ID to response headers
        response.headers["X-Request-ID"] = request_id

        return response
