from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from luaspark.api.schemas import Envelope, ErrorBody
from luaspark.logging import get_correlation_id, get_logger, sanitize_error_message
from luaspark.service.errors import ServiceError
from luaspark.storage.errors import (
    ConstraintViolation,
    CredentialMismatch,
    InvalidRecordInput,
    RecordNotFound,
    StorageError,
)

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    402: "payment_required",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    499: "client_closed_request",
    500: "server_error",
    504: "upstream_timeout",
}

_STORAGE_STATUS = (
    (ConstraintViolation, 409),
    (RecordNotFound, 404),
    (CredentialMismatch, 401),
    (InvalidRecordInput, 400),
)


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _storage_status(exc: StorageError) -> int:
    for exc_type, status_code in _STORAGE_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and storage errors."""

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
            detail=exc.detail,
        )
        message = exc.message if exc.status_code < 500 else sanitize_error_message(exc.message)
        return _error_response(exc.status_code, message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        status_code = _storage_status(exc)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "storage_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        # Lookup details can carry the identity; keep them out of responses
        details = exc.detail if isinstance(exc, (ConstraintViolation, InvalidRecordInput)) else None
        if status_code >= 500:
            return _error_response(500, "internal server error", code="server_error")
        return _error_response(status_code, exc.message, details or None)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _error_response(400, "invalid request body", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
