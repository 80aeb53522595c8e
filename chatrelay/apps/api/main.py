from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, RedirectResponse

from chatrelay.apps.api.errors import register_exception_handlers
from chatrelay.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from chatrelay.apps.api.routes.admin import router as admin_router
from chatrelay.apps.api.routes.events import router as events_router
from chatrelay.apps.api.routes.health import router as health_router
from chatrelay.apps.api.routes.ops import router as ops_router
from chatrelay.core.config import get_settings
from chatrelay.core.logging import configure_logging
from chatrelay.services.telemetry import record_request


_PREFIX = f"/{API_VERSION}"


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title=f"{settings.app_name} API",
        version=API_VERSION,
        openapi_url=f"{_PREFIX}/openapi.json",
        docs_url=None,
        redoc_url=None,
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    for router in (events_router, admin_router, health_router, ops_router):
        app.include_router(router, prefix=_PREFIX)

    @app.get(f"{_PREFIX}/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=app.openapi_url or "", title=f"{settings.app_name} API {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{_PREFIX}/docs")

    return app


app = create_app()
