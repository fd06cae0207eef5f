from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from lexybrain.apps.api.errors import (
    http_exception_handler,
    orchestration_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from lexybrain.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from lexybrain.apps.api.routes.ext import router as ext_router
from lexybrain.apps.api.routes.health import router as health_router
from lexybrain.apps.api.routes.insights import router as insights_router
from lexybrain.apps.api.routes.quota import router as quota_router
from lexybrain.core.config import get_settings
from lexybrain.core.errors import OrchestrationError
from lexybrain.core.logging import configure_logging
from lexybrain.services import background


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # Let background follow-ups finish before shutdown.
    yield
    # Let pending follow-ups (risk notifications) settle before exit.
    await background.drain()


def create_app() -> FastAPI:
    # Build the app with routes, error handlers and request ids.
    configure_logging()
    app = FastAPI(title="LexyBrain API", lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
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
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(OrchestrationError, orchestration_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(insights_router, prefix=f"/{API_VERSION}")
    app.include_router(quota_router, prefix=f"/{API_VERSION}")
    app.include_router(ext_router, prefix=f"/{API_VERSION}")

    logger.info("app_created name=%s", get_settings().app_name)
    return app


app = create_app()
