from __future__ import annotations

from typing import Any

from grantflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
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
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "X-Actor-Id header is required"),
    403: _response("Forbidden", "FORBIDDEN", "Actor role cannot decide this approval step"),
    404: _response("Not found", "NOT_FOUND", "partner_budget not found", {"entity_id": "b1"}),
    409: _response(
        "Conflict",
        "INVALID_TRANSITION",
        "Cannot move contract from GENERATED to SIGNED",
        {"from_state": "GENERATED", "target_state": "SIGNED"},
    ),
    422: _response("Validation error", "VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    502: _response("External provider error", "EXTERNAL_PROVIDER_ERROR", "External approval provider unavailable"),
}
