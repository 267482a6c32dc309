from __future__ import annotations

from typing import Any

from whisprnet.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="BAD_REQUEST", message="Request body is malformed."),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="A github integration already exists for this organization",
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Service unavailable", code="SERVICE_UNAVAILABLE", message="Service unavailable"),
}

WEBHOOK_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: DEFAULT_ERROR_RESPONSES[400],
    401: _response(
        "Signature verification failed",
        code="WEBHOOK_SIGNATURE_INVALID",
        message="Webhook could not be authenticated",
    ),
    503: DEFAULT_ERROR_RESPONSES[503],
}
