from __future__ import annotations

from typing import Any

from lexybrain.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
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
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing user identity"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

INSIGHT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    404: _response(
        "No reliable data",
        code="NO_RELIABLE_DATA",
        message="No reliable data: none of the requested keywords were found.",
        details={"kind": "no_data"},
    ),
    429: _response(
        "Quota exceeded or rate limited",
        code="QUOTA_EXCEEDED",
        message="LexyBrain quota exceeded for ai_brief: 2/2. Upgrade your plan for more AI insights.",
        details={"kind": "quota_exceeded", "quota_key": "ai_brief", "used": 2, "limit": 2},
    ),
    502: _response(
        "Generation failed",
        code="GENERATION_FAILED",
        message="Model output does not match the market_brief schema",
        details={"kind": "generation_failed"},
    ),
    503: _response(
        "Cost cap reached or store unavailable",
        code="COST_CAP_REACHED",
        message="Daily AI budget reached. Please try again tomorrow.",
        details={"kind": "cost_cap_reached"},
    ),
}
