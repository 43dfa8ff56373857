from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request

from verticalguard.apps.api.deps import build_access_controls
from verticalguard.apps.api.errors import register_exception_handlers
from verticalguard.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from verticalguard.apps.api.routes.approvals import router as approvals_router
from verticalguard.apps.api.routes.attributes import router as attributes_router
from verticalguard.apps.api.routes.authorize import router as authorize_router
from verticalguard.apps.api.routes.health import router as health_router
from verticalguard.apps.api.routes.policies import router as policies_router
from verticalguard.core.config import get_settings
from verticalguard.core.logging import configure_logging
from verticalguard.persistence.db import SessionLocal
from verticalguard.services.audit import PolicyEvaluationSink, session_writer
from verticalguard.services.authz.ownership import default_registry


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # The audit consumer lives exactly as long as the app.
    sink = PolicyEvaluationSink(session_writer(SessionLocal))
    sink.start()
    app.state.audit_sink = sink
    try:
        yield
    finally:
        await sink.stop()
        if sink.dropped:
            logger.warning("policy_evaluation_sink_stopped dropped_total=%s", sink.dropped)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="VerticalGuard Authorization API", lifespan=lifespan)
    app.state.access_controls = build_access_controls(settings)
    app.state.ownership = default_registry()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    register_exception_handlers(app)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(authorize_router, prefix=f"/{API_VERSION}")
    app.include_router(attributes_router, prefix=f"/{API_VERSION}")
    app.include_router(policies_router, prefix=f"/{API_VERSION}")
    app.include_router(approvals_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
