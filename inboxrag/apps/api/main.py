from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from inboxrag.apps.api.errors import register_error_handlers
from inboxrag.apps.api.response import API_VERSION
from inboxrag.apps.api.routes.documents import router as documents_router
from inboxrag.apps.api.routes.ops import router as ops_router
from inboxrag.apps.api.routes.tenants import router as tenants_router
from inboxrag.apps.api.routes.webhooks import router as webhooks_router
from inboxrag.core.config import get_settings
from inboxrag.core.logging import configure_logging
from inboxrag.services.container import reset_container
from inboxrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Close pools and queue connections opened lazily during the app's lifetime.
    await reset_container()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="InboxRAG API", lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code}")
        logger.debug(
            "request_done method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    register_error_handlers(app)

    # Provider callbacks and ops endpoints stay unversioned; tenant-facing routes live under /v1.
    app.include_router(webhooks_router)
    app.include_router(ops_router)
    app.include_router(documents_router, prefix=f"/{API_VERSION}")
    app.include_router(tenants_router, prefix=f"/{API_VERSION}")

    logger.info("api_created app=%s mode=%s", get_settings().app_name, get_settings().execution_mode)
    return app


app = create_app()
