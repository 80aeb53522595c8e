from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatrelay.apps.api.response import error_response
from chatrelay.core.errors import (
    AlertStateError,
    ChatRelayError,
    EnqueueError,
    EventValidationError,
    JobStateError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def _classify_domain_error(exc: ChatRelayError) -> tuple[int, str, dict[str, Any] | None]:
    if isinstance(exc, EventValidationError):
        # Malformed events are rejected synchronously and never queued.
        return 400, "EVENT_VALIDATION_ERROR", {"field": exc.field}
    if isinstance(exc, JobStateError):
        return (404 if exc.code == "JOB_NOT_FOUND" else 409), exc.code, None
    if isinstance(exc, AlertStateError):
        return 409, "ALERT_STATE_CONFLICT", None
    if isinstance(exc, EnqueueError):
        return 503, "QUEUE_UNAVAILABLE", None
    return 500, "INTERNAL_ERROR", None


async def domain_exception_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    status_code, code, details = _classify_domain_error(exc)
    if status_code >= 500:
        logger.error(
            "api_domain_error code=%s path=%s request_id=%s",
            code,
            request.url.path,
            getattr(request.state, "request_id", None),
            exc_info=exc,
        )
    message = "Delivery queue unavailable" if isinstance(exc, EnqueueError) else str(exc)
    return _envelope(request, status_code, code, message, details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes raise HTTPException(detail={"code": ..., "message": ...}); bare strings get a status-derived code.
    detail = exc.detail
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    message = "Request failed"
    details: dict[str, Any] | None = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or message)
        details = {key: value for key, value in detail.items() if key not in ("code", "message")} or None
    elif isinstance(detail, str):
        message = detail
    return _envelope(request, exc.status_code, code, message, details, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    # Starlette resolves handlers along the exception MRO, so fastapi.HTTPException
    # and every ChatRelayError subclass land on the handlers below.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ChatRelayError, domain_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
