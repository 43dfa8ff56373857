from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from verticalguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from verticalguard.apps.api.response import SuccessEnvelope, success_response
from verticalguard.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    audit_sink_running: bool
    audit_dropped: int
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    sink = getattr(request.app.state, "audit_sink", None)
    payload = HealthResponse(
        status="ok",
        audit_sink_running=bool(sink is not None and sink.running),
        audit_dropped=int(getattr(sink, "dropped", 0)),
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
