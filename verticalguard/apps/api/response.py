from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel

from verticalguard.services.history import clamp_page


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    # Stable machine code from the error taxonomy plus an admin-facing message.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class Page(BaseModel, Generic[T]):
    # Limit/offset page with the unpaginated total.
    items: list[T]
    total: int
    limit: int
    offset: int


def get_request_id(request: Request) -> str:
    # The middleware assigns one per request; handlers outside it fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def page_response(
    *,
    request: Request,
    items: list[dict[str, Any]],
    total: int,
    limit: int | None,
    offset: int | None,
) -> dict[str, Any]:
    # Echo the bounds the service actually applied, not the raw query values.
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    page = {"items": items, "total": total, "limit": resolved_limit, "offset": resolved_offset}
    return success_response(request=request, data=page)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
