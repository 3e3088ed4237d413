from __future__ import annotations

from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from usergate.api.schemas import ErrorBody, error_messages
from usergate.logging import get_logger
from usergate.service.errors import ServerError, ServiceError
from usergate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    500: "server_error",
}

GENERIC_SERVER_MESSAGE = ServerError.default_message


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    return _STATUS_TO_CODE.get(status_code, "validation_error")


def _error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    errors: Optional[List[str]] = None,
) -> JSONResponse:
    # Server-side detail never reaches the client
    if status_code >= 500:
        message = GENERIC_SERVER_MESSAGE
    body = ErrorBody(
        message=message,
        code=code or _error_code_for_status(status_code),
        errors=errors or None,
    )
    return JSONResponse(
        status_code=status_code, content=body.model_dump(exclude_none=True)
    )


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an exception no handler claimed and answer with the generic 500."""
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return _error_response(500, GENERIC_SERVER_MESSAGE, code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, "Email is already in use", code="conflict")

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
            cause=repr(exc.__cause__) if exc.__cause__ else None,
        )
        return _error_response(
            exc.status_code, exc.message, code=exc.error_code, errors=exc.errors
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = error_messages(exc.errors()) or ["Invalid request body"]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=messages,
        )
        return _error_response(
            400, messages[0], code="validation_error", errors=messages
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        response = _error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    app.add_exception_handler(Exception, unhandled_error_response)
