from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.apps.api.deps import get_db
from chatrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatrelay.apps.api.response import SuccessEnvelope, success_response
from chatrelay.apps.api.routes.admin import alert_payload
from chatrelay.services.health import latest_snapshots, list_alerts, snapshot_history
from chatrelay.services.health.monitor import PIPELINE

router = APIRouter(prefix="/health", tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


def _snapshot_payload(row: Any) -> dict[str, Any]:
    return {
        "component": row.component,
        "score": row.score,
        "status": row.status,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
        "issues": row.issues or [],
        "metrics": row.metrics or {},
    }


@router.get("", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; pipeline health lives under /health/pipeline.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())


@router.get("/pipeline", response_model=SuccessEnvelope[dict[str, Any]])
async def pipeline_health(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    snapshots = await latest_snapshots(session=db)
    overall = snapshots.pop(PIPELINE, None)
    data = {
        "overall": _snapshot_payload(overall) if overall is not None else None,
        "components": {name: _snapshot_payload(row) for name, row in sorted(snapshots.items())},
    }
    return success_response(request=request, data=data)


@router.get("/history", response_model=SuccessEnvelope[dict[str, Any]])
async def health_history(
    request: Request,
    component: str = Query(default=PIPELINE),
    hours: float = Query(default=24, gt=0, le=24 * 90),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await snapshot_history(session=db, component=component, hours=hours)
    return success_response(
        request=request,
        data={"component": component, "hours": hours, "items": [_snapshot_payload(row) for row in rows]},
    )


@router.get("/alerts", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def health_alerts(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Open (raised or acknowledged) alerts unless a status, or "all", is requested.
    rows = await list_alerts(session=db, status=status, limit=limit)
    return success_response(request=request, data={"items": [alert_payload(row) for row in rows]})
