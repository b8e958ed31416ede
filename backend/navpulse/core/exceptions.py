"""
Global exception handlers for the navpulse API.

Catches exceptions and returns user-friendly error responses while logging
appropriately (dependency outages as warning, anything unexpected as error).
"""
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from navpulse.core.circuit_breaker import CircuitOpenError
from navpulse.core.logging_config import get_main_logger
from navpulse.scheduler.scheduler import UnknownJobError
from navpulse.services.cache import StoreUnavailableError

logger = get_main_logger()

HTTP_ERROR_TYPES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "invalid_request",
}


async def circuit_breaker_exception_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
    """
    Handle circuit breaker open errors.
    Returns 503 Service Unavailable with retry information.
    """
    logger.warning(f"Circuit breaker open ({exc.dependency}): {request.method} {request.url.path}")
    retry_after = int(exc.retry_after) + 1 if exc.retry_after is not None else 30
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Upstream data source temporarily unavailable. Please try again shortly.",
            "error_type": "circuit_breaker_open",
            "dependency": exc.dependency,
            "retry_after": retry_after
        },
        headers={"Retry-After": str(retry_after)},
    )


async def store_unavailable_exception_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Durable store failure: no tier left to serve from."""
    logger.error(f"Store unavailable: {request.method} {request.url.path} - {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Data store temporarily unavailable. Please try again shortly.",
            "error_type": "store_unavailable",
            "retry_after": 30
        }
    )


async def unknown_job_exception_handler(request: Request, exc: UnknownJobError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "error_type": "unknown_job"}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full traceback to the log, generic 500 to the client."""
    logger.exception(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_type": "internal_error"
        }
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Expected HTTP errors (401, 403, 404, 422 from routes) are not logged."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_type": HTTP_ERROR_TYPES.get(exc.status_code, "http_error")},
        headers=getattr(exc, "headers", None)
    )


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app."""
    # Handle HTTP exceptions (404, etc.)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    # Dependency outages
    app.add_exception_handler(CircuitOpenError, circuit_breaker_exception_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_exception_handler)

    app.add_exception_handler(UnknownJobError, unknown_job_exception_handler)

    # Handle all other exceptions
    app.add_exception_handler(Exception, generic_exception_handler)
