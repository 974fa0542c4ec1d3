"""
Global exception handlers

ServicingError -> its own status and envelope; request validation -> 400 with
field details; anything else -> 500 with no internal detail.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import RateLimitExceededError, ServicingError
from ..logging_config import get_logger, log_action

logger = get_logger("servicing.api")


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""

    @app.exception_handler(ServicingError)
    async def servicing_error_handler(request: Request, exc: ServicingError):
        level = "error" if exc.http_status >= 500 else "warning"
        log_action(
            logger, level, f"{exc.code}: {exc.message}",
            action="request_rejected", resource=request.url.path,
            request_id=request.headers.get("x-request-id"),
            extra={"status": exc.http_status, "method": request.method}
        )
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.http_status, content=exc.to_response(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid request data",
                "code": "VALIDATION_ERROR",
                "details": [
                    {
                        "field": ".".join(str(loc) for loc in e["loc"]),
                        "message": e["msg"],
                    }
                    for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        log_action(
            logger, "error", f"Unhandled exception on {request.url.path}: {exc}",
            action="internal_error", resource=request.url.path,
            request_id=request.headers.get("x-request-id"),
            exc_info=True
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )
