from __future__ import annotations

from typing import Any

from verticalguard.apps.api.response import ErrorEnvelope


def _error_response(*, description: str, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": "v1"},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response(
        description="Bad request",
        code="BUSINESS_VERTICAL_UNRESOLVED",
        message="Business vertical 'unknown' not found",
    ),
    401: _error_response(
        description="Unauthorized",
        code="AUTH_UNAUTHORIZED",
        message="Subject does not resolve to an active user",
    ),
    403: _error_response(
        description="Forbidden",
        code="AUTH_FORBIDDEN",
        message="Missing permission policy:manage",
    ),
    404: _error_response(description="Not found", code="POLICY_NOT_FOUND", message="Policy not found."),
    409: _error_response(
        description="Conflict",
        code="APPROVER_ALREADY_DECIDED",
        message="Approver already voted on this request.",
    ),
    422: _error_response(
        description="Invalid input",
        code="POLICY_CONDITION_INVALID",
        message="Logical operator must have at least one condition",
    ),
    500: _error_response(description="Internal error", code="INTERNAL_ERROR", message="Data store failure."),
}
