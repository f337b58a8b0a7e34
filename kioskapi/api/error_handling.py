from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from kioskapi.logging import get_logger
from kioskapi.service.errors import ServiceError
from kioskapi.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"
VALIDATION_FAILED_MESSAGE = "Validation failed"


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    *,
    headers: Dict[str, str] | None = None,
) -> JSONResponse:
    """Flat ``{"error": message}`` body, with ``details`` only when there are any."""
    content: Dict[str, Any] = {"error": message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    errors: List[Dict[str, str]] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append(
            {
                "field": ".".join(loc) or "body",
                "message": str(err.get("msg", "invalid value")),
            }
        )
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that map domain and storage errors onto HTTP responses."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(500, INTERNAL_ERROR_MESSAGE)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        # server errors never echo internal detail
        details = None if exc.status_code >= 500 else exc.detail
        return error_response(exc.status_code, exc.message, details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return JSONResponse(
            status_code=400,
            content={"error": VALIDATION_FAILED_MESSAGE, "errors": errors},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, INTERNAL_ERROR_MESSAGE)
