from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lexybrain.apps.api.response import error_response
from lexybrain.core.errors import OrchestrationError


logger = logging.getLogger(__name__)

# Fallback codes for HTTP errors raised without a structured detail.
STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "REQUEST_VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "GENERATION_FAILED",
    503: "SERVICE_UNAVAILABLE",
}

# Terminal orchestration kinds and the HTTP status each one maps to.
ORCHESTRATION_STATUS: dict[str, int] = {
    "no_data": 404,
    "quota_exceeded": 429,
    "cost_cap_reached": 503,
    "generation_failed": 502,
    "store_unavailable": 503,
}


def _envelope(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=dict(headers) if headers else None)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Structured details from dependencies are lifted into the error envelope.
    fallback = STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    detail = exc.detail
    headers = getattr(exc, "headers", None)
    if not isinstance(detail, dict):
        message = detail if isinstance(detail, str) and detail else "Request failed"
        return _envelope(request, exc.status_code, code=fallback, message=message, headers=headers)
    # Dependencies raise {"code", "message", ...extra}; the extras become details.
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return _envelope(
        request,
        exc.status_code,
        code=str(detail.get("code") or fallback),
        message=str(detail.get("message") or "Request failed"),
        details=extra or None,
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def orchestration_exception_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
    # Map orchestration kinds to HTTP statuses.
    status_code = ORCHESTRATION_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.warning("insight_request_failed kind=%s path=%s message=%s", exc.kind, request.url.path, exc.message)
    return _envelope(request, status_code, code=exc.code, message=exc.message, details=exc.details())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Last-resort handler; details stay in the logs.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, code="INTERNAL_ERROR", message="Internal server error")
