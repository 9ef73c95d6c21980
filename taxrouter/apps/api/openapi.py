from __future__ import annotations

from typing import Any

from taxrouter.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="BAD_REQUEST", message="missing required fields: tenant_id"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Unauthorized"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Forbidden"),
    404: _response("Not found", code="TENANT_NOT_FOUND", message="Tenant not found"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

# Commission status changes add the conflict response.
TRANSITION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _response(
        "Status transition not allowed",
        code="ILLEGAL_STATE_TRANSITION",
        message="Status transition not allowed",
    ),
}
