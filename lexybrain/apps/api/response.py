from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware assigns one first; errors raised outside it still get a stable id.
    request_id = (
        getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    )
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Wrap data in the standard envelope.
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Error envelope with optional details.
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
