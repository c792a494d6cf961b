from __future__ import annotations

from typing import Dict, Type, TypeVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from accountcore.api.schemas import Envelope, ErrorBody
from accountcore.logging import get_logger, sanitize_error_message
from accountcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    InvalidTokenError,
    NotFoundError,
    RevokedError,
    ServerError,
    ServiceError,
    SessionExpiredError,
    ValidationError,
)
from accountcore.service.result import Err, ErrorKind, Ok, Result
from accountcore.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}

_KIND_TO_ERROR: Dict[ErrorKind, Type[ServiceError]] = {
    ErrorKind.INVALID_INPUT: ValidationError,
    ErrorKind.INVALID_TOKEN: InvalidTokenError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.INVALID_CREDENTIAL: InvalidCredentialError,
    ErrorKind.UNAUTHENTICATED: AuthenticationError,
    ErrorKind.REVOKED: RevokedError,
    ErrorKind.EXPIRED: SessionExpiredError,
    ErrorKind.MALFORMED: AuthenticationError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.INTERNAL: ServerError,
}


def to_service_error(failure: Err) -> ServiceError:
    error_cls = _KIND_TO_ERROR.get(failure.kind, ServerError)
    if error_cls is ServerError:
        # internal details stay in the logs
        return ServerError("internal server error")
    return error_cls(failure.message, detail=dict(failure.detail))


def unwrap(result: Result[T]) -> T:
    """Return the value of an ``Ok`` or raise the mapped ``ServiceError``."""
    if isinstance(result, Ok):
        return result.value
    raise to_service_error(result)


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
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

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
            error_count=len(errors),
        )
        return _error_response(400, "request validation failed", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            message = sanitize_error_message(message)
            details = None
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
