from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str = Field(description="Echo of X-Request-Id, or a generated id")
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str = Field(description="Stable machine-readable code, e.g. JOB_NOT_RECOVERABLE")
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    """Body of every 2xx response under /v1."""

    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    """Body of every non-2xx response under /v1."""

    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The id is pinned on request.state the first time it is read so that
    # the middleware, handlers and envelopes all report the same value.
    cached = getattr(request.state, "request_id", None)
    if not cached:
        cached = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = cached
    return cached


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details)
    return {"error": detail.model_dump(exclude_none=True), "meta": _meta(request)}
