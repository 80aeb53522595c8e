from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.apps.api.deps import AdminPrincipal, get_db, require_admin
from chatrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatrelay.apps.api.response import SuccessEnvelope, success_response
from chatrelay.apps.api.routes.admin import circuit_payload
from chatrelay.persistence.db import pool_stats
from chatrelay.services.coordination import get_worker_heartbeats
from chatrelay.services.delivery import ChannelCircuitBreaker, DeliveryQueue
from chatrelay.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency_p95,
)

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/queue", response_model=SuccessEnvelope[dict[str, Any]])
async def queue_stats(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    stats = await DeliveryQueue().stats(session=db)
    heartbeats = await get_worker_heartbeats()
    stats["workers"] = (
        None if heartbeats is None else {worker: seen.isoformat() for worker, seen in sorted(heartbeats.items())}
    )
    return success_response(request=request, data=stats)


@router.get("/circuits", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def circuits(
    request: Request,
    state: str | None = Query(default=None),
    principal: AdminPrincipal = Depends(require_admin),
) -> dict[str, Any]:
    rows = await ChannelCircuitBreaker().list_states(state=state)
    return success_response(request=request, data={"items": [circuit_payload(row) for row in rows]})


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    principal: AdminPrincipal = Depends(require_admin),
) -> dict[str, Any]:
    # In-process counters only; each API and worker process reports its own.
    return success_response(
        request=request,
        data={
            "counters": counters_snapshot(),
            "gauges": gauges_snapshot(),
            "request_latency_p95_ms": request_latency_p95(window_s),
            "external_calls": external_latency_by_integration(window_s),
            "db_pool": pool_stats(),
        },
    )
