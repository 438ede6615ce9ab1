from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from postureledger.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from postureledger.apps.api.response import API_VERSION
from postureledger.apps.api.routes.agent import router as agent_router
from postureledger.apps.api.routes.controls import router as controls_router
from postureledger.apps.api.routes.evidence import router as evidence_router
from postureledger.apps.api.routes.health import router as health_router
from postureledger.apps.api.routes.integrations import router as integrations_router
from postureledger.apps.api.routes.ops import router as ops_router
from postureledger.apps.api.routes.risks import router as risks_router
from postureledger.apps.api.routes.tests import router as tests_router
from postureledger.core.config import get_settings
from postureledger.core.errors import PostureLedgerError
from postureledger.core.logging import configure_logging
from postureledger.services.background import get_background_tasks
from postureledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Let in-process scans finish writing before the loop goes away.
    await get_background_tasks().drain(timeout=30)
    await get_background_tasks().cancel_all()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="PostureLedger API", lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter("http_requests_total")
        if response.status_code >= 500:
            increment_counter("http_requests_5xx_total")
        logger.debug(
            "request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(PostureLedgerError)
    async def _domain_exception_handler(request: Request, exc: PostureLedgerError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Device agents authenticate with their own per-device key.
    app.include_router(agent_router, prefix=f"/{API_VERSION}")
    app.include_router(integrations_router, prefix=f"/{API_VERSION}")
    app.include_router(tests_router, prefix=f"/{API_VERSION}")
    app.include_router(controls_router, prefix=f"/{API_VERSION}")
    app.include_router(risks_router, prefix=f"/{API_VERSION}")
    app.include_router(evidence_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    logger.info("api_started app=%s mode=%s", settings.app_name, settings.scan_execution_mode)
    return app


app = create_app()
