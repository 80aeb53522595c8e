from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.apps.api.deps import AdminPrincipal, get_db, require_admin
from chatrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatrelay.apps.api.response import SuccessEnvelope, get_request_id, success_response
from chatrelay.domain.state import JOB_FAILED_RETRYABLE, JOB_FAILED_TERMINAL
from chatrelay.services.audit import record_event
from chatrelay.services.delivery import (
    ChannelCircuitBreaker,
    RecoveryFilter,
    get_delivery_job,
    list_delivery_jobs,
    list_job_attempts,
    retry_jobs,
)
from chatrelay.services.health import acknowledge_alert, resolve_alert

router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class RecoveryFilterRequest(BaseModel):
    tenant_id: str | None = None
    status: Literal["failed_terminal", "failed_retryable"] = JOB_FAILED_TERMINAL
    older_than_hours: float | None = Field(default=None, ge=0)
    rule_id: str | None = None
    channel_id: str | None = None
    limit: int = Field(default=100, ge=1, le=500)


class RecoveryRetryRequest(BaseModel):
    job_id: str | None = None
    filter: RecoveryFilterRequest | None = None

    @model_validator(mode="after")
    def _one_target(self) -> "RecoveryRetryRequest":
        if (self.job_id is None) == (self.filter is None):
            raise ValueError("provide exactly one of job_id or filter")
        return self


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _job_payload(row: Any) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "rule_id": row.rule_id,
        "channel_id": row.channel_id,
        "event_type": row.event_type,
        "dedupe_key": row.dedupe_key,
        "status": row.status,
        "tier": row.tier,
        "priority": row.priority,
        "attempt_count": row.attempt_count,
        "max_attempts": row.max_attempts,
        "scheduled_for": _iso(row.scheduled_for),
        "claimed_by": row.claimed_by,
        "claim_expires_at": _iso(row.claim_expires_at),
        "last_error": row.last_error,
        "last_outcome": row.last_outcome,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "completed_at": _iso(row.completed_at),
    }


def _attempt_payload(row: Any) -> dict[str, Any]:
    return {
        "attempt_no": row.attempt_no,
        "path": row.path,
        "outcome": row.outcome,
        "status_code": row.status_code,
        "latency_ms": row.latency_ms,
        "endpoint": row.endpoint,
        "error": row.error,
        "created_at": _iso(row.created_at),
    }


def alert_payload(row: Any) -> dict[str, Any]:
    return {
        "id": row.id,
        "alert_key": row.alert_key,
        "severity": row.severity,
        "title": row.title,
        "description": row.description,
        "component": row.component,
        "metric_name": row.metric_name,
        "current_value": row.current_value,
        "threshold_value": row.threshold_value,
        "status": row.status,
        "occurrences": row.occurrences,
        "raised_at": _iso(row.raised_at),
        "last_seen_at": _iso(row.last_seen_at),
        "acknowledged_at": _iso(row.acknowledged_at),
        "acknowledged_by": row.acknowledged_by,
        "resolved_at": _iso(row.resolved_at),
        "resolved_by": row.resolved_by,
        "cleared_at": _iso(row.cleared_at),
    }


def circuit_payload(row: Any) -> dict[str, Any]:
    return {
        "channel_id": row.channel_id,
        "state": row.state,
        "failure_count": row.failure_count,
        "success_count": row.success_count,
        "open_count": row.open_count,
        "opened_at": _iso(row.opened_at),
        "next_probe_at": _iso(row.next_probe_at),
        "updated_at": _iso(row.updated_at),
    }


@router.post("/recovery/retry", response_model=SuccessEnvelope[dict[str, Any]])
async def retry_failed_jobs(
    request: Request,
    payload: RecoveryRetryRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Manual recovery is the only way a dead-lettered job is re-enqueued.
    recovery_filter = None
    if payload.filter is not None:
        recovery_filter = RecoveryFilter(**payload.filter.model_dump())
    result = await retry_jobs(
        session=db,
        job_id=payload.job_id,
        recovery_filter=recovery_filter,
        actor_id=principal.actor_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data={"retried_count": result.retried_count, "job_ids": result.job_ids, "skipped": result.skipped},
    )


@router.get("/jobs", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_jobs(
    request: Request,
    tenant_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    tier: int | None = Query(default=None, ge=0, le=2),
    limit: int = Query(default=100, ge=1, le=500),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_delivery_jobs(session=db, tenant_id=tenant_id, status=status, tier=tier, limit=limit)
    return success_response(request=request, data={"items": [_job_payload(row) for row in rows]})


@router.get("/jobs/{job_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_job(
    job_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await get_delivery_job(session=db, job_id=job_id)
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Delivery job not found"})
    data = _job_payload(row)
    data["recoverable"] = row.status in (JOB_FAILED_TERMINAL, JOB_FAILED_RETRYABLE)
    data["attempts"] = [_attempt_payload(item) for item in await list_job_attempts(session=db, job_id=job_id)]
    return success_response(request=request, data=data)


@router.post("/alerts/{alert_id}/ack", response_model=SuccessEnvelope[dict[str, Any]])
async def ack_alert(
    alert_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await acknowledge_alert(
        session=db,
        alert_id=alert_id,
        actor_id=principal.actor_id,
        request_id=get_request_id(request),
    )
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert not found"})
    return success_response(request=request, data=alert_payload(row))


@router.post("/alerts/{alert_id}/resolve", response_model=SuccessEnvelope[dict[str, Any]])
async def resolve_alert_handler(
    alert_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await resolve_alert(
        session=db,
        alert_id=alert_id,
        actor_id=principal.actor_id,
        request_id=get_request_id(request),
    )
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert not found"})
    return success_response(request=request, data=alert_payload(row))


@router.post("/circuits/{channel_id}/reset", response_model=SuccessEnvelope[dict[str, Any]])
async def reset_circuit(
    channel_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict[str, Any]:
    # Operator override for a channel known to be healthy again.
    row = await ChannelCircuitBreaker().reset(channel_id)
    await record_event(
        tenant_id=None,
        actor_type="admin",
        actor_id=principal.actor_id,
        event_type="delivery.circuit.reset",
        outcome="success",
        resource_type="channel",
        resource_id=channel_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=circuit_payload(row))
