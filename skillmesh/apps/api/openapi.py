from __future__ import annotations

from typing import Any

from skillmesh.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Tenant not identified", "TENANT_NOT_IDENTIFIED", "No tenant hint present in the request"),
    401: _error_response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _error_response("Forbidden", "AUTH_FORBIDDEN", "Insufficient role for this operation"),
    404: _error_response("Not found", "TENANT_NOT_FOUND", "No tenant for slug 'acme'"),
    409: _error_response("Conflict", "CONFLICT", "Tenant acme already has a migration in flight"),
    422: _error_response("Validation error", "VALIDATION_ERROR", "Slug 'acme' is already in use"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_response(
        "Unavailable",
        "TENANT_UNAVAILABLE",
        "Writes for tenant acme are frozen for cutover",
        details={"retryable": True, "retry_after_s": 5},
    ),
}
