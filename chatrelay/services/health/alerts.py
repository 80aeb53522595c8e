from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.errors import AlertStateError
from chatrelay.domain.models import HealthAlert
from chatrelay.domain.state import (
    ALERT_ACKNOWLEDGED,
    ALERT_RAISED,
    ALERT_RESOLVED,
    OPEN_ALERT_STATUSES,
)
from chatrelay.services.audit import record_event
from chatrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MONITOR_ACTOR = "health_monitor"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _severity_rank(value: str) -> int:
    # Dedupe updates only ever escalate severity.
    return {"critical": 3, "warning": 2, "info": 1}.get(value.strip().lower(), 0)


@dataclass(frozen=True)
class AlertCandidate:
    alert_key: str
    severity: str
    title: str
    component: str
    description: str | None = None
    metric_name: str | None = None
    current_value: float | None = None
    threshold_value: float | None = None


@dataclass
class AlertSyncResult:
    raised: list[HealthAlert] = field(default_factory=list)
    refreshed: list[HealthAlert] = field(default_factory=list)
    cleared: list[HealthAlert] = field(default_factory=list)


async def sync_alerts(
    *,
    session: AsyncSession,
    candidates: Iterable[AlertCandidate],
    now: datetime | None = None,
) -> AlertSyncResult:
    """Reconcile this cycle's breaches with the alerts whose condition is still live.

    A key with a live alert is only refreshed, so a sustained breach keeps a
    single alert. Live alerts missing from ``candidates`` are cleared and,
    if still open, auto-resolved.
    """
    now = now or _utc_now()
    result = AlertSyncResult()
    live = (
        await session.execute(select(HealthAlert).where(HealthAlert.cleared_at.is_(None)))
    ).scalars().all()
    live_by_key = {row.alert_key: row for row in live}

    seen: set[str] = set()
    for candidate in candidates:
        if candidate.alert_key in seen:
            continue
        seen.add(candidate.alert_key)
        existing = live_by_key.get(candidate.alert_key)
        if existing is not None:
            existing.last_seen_at = now
            existing.occurrences = int(existing.occurrences or 0) + 1
            existing.current_value = candidate.current_value
            if _severity_rank(candidate.severity) > _severity_rank(existing.severity):
                existing.severity = candidate.severity
            result.refreshed.append(existing)
            continue
        alert = HealthAlert(
            alert_key=candidate.alert_key,
            severity=candidate.severity,
            title=candidate.title,
            description=candidate.description,
            component=candidate.component,
            metric_name=candidate.metric_name,
            current_value=candidate.current_value,
            threshold_value=candidate.threshold_value,
            status=ALERT_RAISED,
            occurrences=1,
            raised_at=now,
            last_seen_at=now,
        )
        session.add(alert)
        result.raised.append(alert)

    for key, row in live_by_key.items():
        if key in seen:
            continue
        row.cleared_at = now
        if row.status in OPEN_ALERT_STATUSES:
            row.status = ALERT_RESOLVED
            row.resolved_at = now
            row.resolved_by = MONITOR_ACTOR
        result.cleared.append(row)

    await session.commit()
    for alert in result.raised:
        increment_counter("health_alerts_raised_total")
        logger.warning(
            "health_alert_raised key=%s severity=%s component=%s",
            alert.alert_key,
            alert.severity,
            alert.component,
        )
    for alert in result.cleared:
        logger.info("health_alert_cleared key=%s", alert.alert_key)
    return result


async def list_alerts(
    *,
    session: AsyncSession,
    status: str | None = None,
    limit: int = 100,
) -> list[HealthAlert]:
    # Default view is what still needs an operator: raised and acknowledged alerts.
    query = select(HealthAlert)
    if status is None:
        query = query.where(HealthAlert.status.in_(OPEN_ALERT_STATUSES))
    elif status != "all":
        query = query.where(HealthAlert.status == status)
    rows = (
        await session.execute(query.order_by(HealthAlert.raised_at.desc()).limit(max(1, min(limit, 500))))
    ).scalars().all()
    return list(rows)


async def acknowledge_alert(
    *,
    session: AsyncSession,
    alert_id: str,
    actor_id: str | None,
    request_id: str | None = None,
) -> HealthAlert | None:
    alert = await session.get(HealthAlert, alert_id)
    if alert is None:
        return None
    if alert.status != ALERT_RAISED:
        raise AlertStateError(f"alert {alert_id} is {alert.status} and cannot be acknowledged")
    alert.status = ALERT_ACKNOWLEDGED
    alert.acknowledged_at = _utc_now()
    alert.acknowledged_by = actor_id
    await session.commit()
    await record_event(
        session=session,
        tenant_id=None,
        actor_type="admin",
        actor_id=actor_id,
        event_type="health.alert.acknowledged",
        outcome="success",
        resource_type="health_alert",
        resource_id=alert.id,
        request_id=request_id,
        metadata={"alert_key": alert.alert_key},
        commit=True,
    )
    return alert


async def resolve_alert(
    *,
    session: AsyncSession,
    alert_id: str,
    actor_id: str | None,
    request_id: str | None = None,
) -> HealthAlert | None:
    alert = await session.get(HealthAlert, alert_id)
    if alert is None:
        return None
    if alert.status not in OPEN_ALERT_STATUSES:
        raise AlertStateError(f"alert {alert_id} is already {alert.status}")
    alert.status = ALERT_RESOLVED
    alert.resolved_at = _utc_now()
    alert.resolved_by = actor_id
    await session.commit()
    await record_event(
        session=session,
        tenant_id=None,
        actor_type="admin",
        actor_id=actor_id,
        event_type="health.alert.resolved",
        outcome="success",
        resource_type="health_alert",
        resource_id=alert.id,
        request_id=request_id,
        metadata={"alert_key": alert.alert_key},
        commit=True,
    )
    return alert
