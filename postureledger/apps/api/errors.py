from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from postureledger.apps.api.response import error_response
from postureledger.core.errors import (
    DeviceAuthError,
    DeviceNotFoundError,
    EnrollmentError,
    IntegrationNotConnectedError,
    IntegrationUnavailableError,
    PostureLedgerError,
    ServiceBusyError,
    TrackedItemForbiddenError,
    TrackedItemNotFoundError,
    TrackedItemStateError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    410: "GONE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors in order of specificity: (type, status, code).
_DOMAIN_ERRORS: tuple[tuple[type[PostureLedgerError], int, str], ...] = (
    (DeviceAuthError, 401, "DEVICE_UNAUTHORIZED"),
    (TrackedItemNotFoundError, 404, "NOT_FOUND"),
    (DeviceNotFoundError, 404, "NOT_FOUND"),
    (TrackedItemForbiddenError, 403, "AUTH_FORBIDDEN"),
    (TrackedItemStateError, 409, "CONFLICT"),
    (IntegrationNotConnectedError, 409, "INTEGRATION_NOT_CONNECTED"),
    (ServiceBusyError, 503, "SERVICE_BUSY"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a {code, message, ...} dict or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed payloads are rejected here, before any route touches the database.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=jsonable_encoder(payload), status_code=422)


def domain_error_status(exc: PostureLedgerError) -> tuple[int, str]:
    if isinstance(exc, EnrollmentError):
        return exc.status_code, exc.code
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def domain_exception_handler(request: Request, exc: PostureLedgerError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    if status_code >= 500 and status_code != 503:
        logger.error("unhandled_domain_error path=%s", request.url.path, exc_info=exc)
    message = str(exc) if status_code < 500 or status_code == 503 else "Internal server error"
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log carries them.
    logger.exception("unhandled_exception path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


__all__ = [
    "HTTPException",
    "domain_exception_handler",
    "http_exception_handler",
    "unhandled_exception_handler",
    "validation_exception_handler",
]
