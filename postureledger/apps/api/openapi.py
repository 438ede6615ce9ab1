from __future__ import annotations

from typing import Any

from postureledger.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing principal headers"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Insufficient role for this operation"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    409: _response("Conflict", "CONFLICT", "Tracked item is already completed"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Service unavailable", "SERVICE_UNAVAILABLE", "Scan capacity is saturated"),
}

AGENT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    401: _response("Device unauthorized", "DEVICE_UNAUTHORIZED", "Invalid device key"),
    409: _response("Enrollment token used", "ENROLLMENT_TOKEN_USED", "Enrollment token already used"),
    410: _response("Enrollment token expired", "ENROLLMENT_TOKEN_EXPIRED", "Enrollment token expired"),
}
