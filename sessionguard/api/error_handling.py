from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from sessionguard.api.schemas import Envelope, ErrorBody
from sessionguard.logging import get_logger, sanitize_error_message
from sessionguard.service.errors import ServiceError
from sessionguard.storage.errors import StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    500: "SERVER_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVER_ERROR")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render an ``{"status": "error", ...}`` envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _rate_limit_headers(
    request: Request, extra: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """X-RateLimit-* headers of a request already counted by a limiter."""
    headers: Dict[str, str] = {}
    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        headers.update(decision.headers())
    if extra:
        headers.update(extra)
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and HTTP errors."""

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
            kind=exc.kind.value if exc.kind else None,
        )
        return error_response(
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers=_rate_limit_headers(request, exc.headers) or None,
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(500, "storage unavailable", code="SERVER_ERROR")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        return error_response(400, "invalid request", errors, code="VALIDATION_ERROR")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        return error_response(
            exc.status_code,
            sanitize_error_message(message),
            headers=getattr(exc, "headers", None),
        )

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
        return error_response(500, "internal server error", code="SERVER_ERROR")
