from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from grantflow.apps.api.errors import (
    grantflow_error_handler,
    http_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from grantflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantflow.apps.api.response import API_VERSION
from grantflow.apps.api.routes.approvals import router as approvals_router
from grantflow.apps.api.routes.audit import router as audit_router
from grantflow.apps.api.routes.budgets import router as budgets_router
from grantflow.apps.api.routes.contracts import router as contracts_router
from grantflow.apps.api.routes.health import router as health_router
from grantflow.apps.api.routes.notifications import router as notifications_router
from grantflow.core.errors import GrantflowError
from grantflow.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="GrantFlow API", version=API_VERSION, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Handlers resolve by exception MRO; Exception is the 500 fallback.
    app.add_exception_handler(GrantflowError, grantflow_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Mount versioned v1 API routes.
    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(budgets_router, prefix=prefix, responses=DEFAULT_ERROR_RESPONSES)
    app.include_router(contracts_router, prefix=prefix, responses=DEFAULT_ERROR_RESPONSES)
    app.include_router(approvals_router, prefix=prefix, responses=DEFAULT_ERROR_RESPONSES)
    app.include_router(audit_router, prefix=prefix, responses=DEFAULT_ERROR_RESPONSES)
    app.include_router(notifications_router, prefix=prefix, responses=DEFAULT_ERROR_RESPONSES)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="GrantFlow API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
