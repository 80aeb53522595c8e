from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.config import get_settings
from chatrelay.core.errors import ChatRelayError
from chatrelay.domain.models import Channel, CircuitState, DeliveryAttemptLog, HealthSnapshot, Rule
from chatrelay.domain.state import (
    CIRCUIT_CLOSED,
    OUTCOME_CIRCUIT_OPEN,
    OUTCOME_SUCCESS,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.coordination import (
    HEALTH_MONITOR_LOCK_KEY,
    acquire_lock,
    get_worker_heartbeats,
    release_lock,
)
from chatrelay.services.delivery.queue import DeliveryQueue
from chatrelay.services.health.alerts import AlertCandidate, sync_alerts
from chatrelay.services.normalizer import canonicalize_event_type
from chatrelay.services.predicates import parse_predicate
from chatrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

COMPONENT_DELIVERY = "delivery"
COMPONENT_QUEUE = "queue"
COMPONENT_BREAKERS = "breakers"
COMPONENT_CONFIG = "config"
PIPELINE = "pipeline"

# Component weights sum to 100.
WEIGHTS = {
    COMPONENT_DELIVERY: 40,
    COMPONENT_QUEUE: 20,
    COMPONENT_BREAKERS: 20,
    COMPONENT_CONFIG: 20,
}
HEALTHY_MIN_SCORE = 90
DEGRADED_MIN_SCORE = 70


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


def classify_score(score: int) -> str:
    if score >= HEALTHY_MIN_SCORE:
        return "healthy"
    if score >= DEGRADED_MIN_SCORE:
        return "degraded"
    return "critical"


@dataclass(frozen=True)
class HealthIssue:
    code: str
    severity: str
    component: str
    message: str
    metric: str | None = None
    value: float | None = None
    threshold: float | None = None
    requires_ack: bool = False
    # Distinguishes per-channel or per-rule findings that share a code.
    subject: str | None = None

    @property
    def alert_key(self) -> str:
        key = f"{self.component}:{self.code}"
        return f"{key}:{self.subject}" if self.subject else key

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity,
            "component": self.component,
            "message": self.message,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "requires_ack": self.requires_ack,
            "subject": self.subject,
        }


@dataclass
class ComponentHealth:
    name: str
    # Fraction of the component's weight earned, in [0, 1].
    factor: float
    issues: list[HealthIssue] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def score(self) -> int:
        return int(round(max(0.0, min(1.0, self.factor)) * 100))

    @property
    def status(self) -> str:
        return classify_score(self.score)


@dataclass
class HealthReport:
    score: int
    status: str
    checked_at: datetime
    components: dict[str, ComponentHealth]
    issues: list[HealthIssue]
    auto_fixes: dict[str, int]

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "components": {
                name: {
                    "score": component.score,
                    "status": component.status,
                    "weight": WEIGHTS.get(name),
                    "metrics": component.metrics,
                    "issues": [issue.as_dict() for issue in component.issues],
                }
                for name, component in self.components.items()
            },
            "auto_fixes": dict(self.auto_fixes),
        }


def composite_score(components: dict[str, ComponentHealth]) -> int:
    total = 0.0
    for name, weight in WEIGHTS.items():
        component = components.get(name)
        factor = 1.0 if component is None else max(0.0, min(1.0, component.factor))
        total += weight * factor
    return int(round(total))


def _linear_factor(value: float, warn: float, critical: float) -> float:
    # 1.0 up to the warning threshold, falling to 0.0 at the critical threshold.
    if value <= warn:
        return 1.0
    if value >= critical or critical <= warn:
        return 0.0
    return 1.0 - (value - warn) / (critical - warn)


async def check_queue(
    *,
    session: AsyncSession,
    now: datetime,
    queue: DeliveryQueue | None = None,
) -> ComponentHealth:
    settings = get_settings()
    stats = await (queue or DeliveryQueue(clock=lambda: now)).stats(session=session)
    backlog = int(stats["backlog"])
    oldest_age_s = stats["oldest_due_age_s"]
    dead_letter = int(stats["by_tier"]["dead_letter"])
    issues: list[HealthIssue] = []

    if backlog >= settings.health_backlog_critical:
        issues.append(
            HealthIssue(
                code="QUEUE_BACKLOG_CRITICAL",
                severity="critical",
                component=COMPONENT_QUEUE,
                message=f"{backlog} jobs waiting for delivery",
                metric="backlog",
                value=backlog,
                threshold=settings.health_backlog_critical,
            )
        )
    elif backlog >= settings.health_backlog_warn:
        issues.append(
            HealthIssue(
                code="QUEUE_BACKLOG_HIGH",
                severity="warning",
                component=COMPONENT_QUEUE,
                message=f"{backlog} jobs waiting for delivery",
                metric="backlog",
                value=backlog,
                threshold=settings.health_backlog_warn,
            )
        )

    if oldest_age_s is not None and oldest_age_s >= settings.health_queue_age_critical_s:
        issues.append(
            HealthIssue(
                code="QUEUE_STALLED",
                severity="critical",
                component=COMPONENT_QUEUE,
                message=f"oldest due job has waited {int(oldest_age_s)}s",
                metric="oldest_due_age_s",
                value=oldest_age_s,
                threshold=settings.health_queue_age_critical_s,
                requires_ack=True,
            )
        )
    elif oldest_age_s is not None and oldest_age_s >= settings.health_queue_age_warn_s:
        issues.append(
            HealthIssue(
                code="QUEUE_AGE_HIGH",
                severity="warning",
                component=COMPONENT_QUEUE,
                message=f"oldest due job has waited {int(oldest_age_s)}s",
                metric="oldest_due_age_s",
                value=oldest_age_s,
                threshold=settings.health_queue_age_warn_s,
            )
        )

    heartbeats = await get_worker_heartbeats(now=now)
    live_workers: int | None = None
    if heartbeats is not None:
        stale_after = timedelta(seconds=max(1, settings.worker_heartbeat_stale_after_s))
        live_workers = sum(1 for seen_at in heartbeats.values() if now - seen_at <= stale_after)
        if live_workers == 0 and backlog > 0:
            issues.append(
                HealthIssue(
                    code="NO_LIVE_WORKERS",
                    severity="critical",
                    component=COMPONENT_QUEUE,
                    message="jobs are waiting but no delivery worker has a fresh heartbeat",
                    metric="live_workers",
                    value=0,
                    threshold=1,
                    requires_ack=True,
                )
            )

    if dead_letter:
        issues.append(
            HealthIssue(
                code="DEAD_LETTER_JOBS",
                severity="info",
                component=COMPONENT_QUEUE,
                message=f"{dead_letter} jobs in the dead-letter tier",
                metric="dead_letter",
                value=dead_letter,
            )
        )

    factor = _linear_factor(backlog, settings.health_backlog_warn, settings.health_backlog_critical)
    if oldest_age_s is not None:
        factor = min(
            factor,
            _linear_factor(oldest_age_s, settings.health_queue_age_warn_s, settings.health_queue_age_critical_s),
        )
    if live_workers == 0 and backlog > 0:
        factor = 0.0
    return ComponentHealth(
        name=COMPONENT_QUEUE,
        factor=factor,
        issues=issues,
        metrics={
            "backlog": backlog,
            "in_flight": stats["in_flight"],
            "by_tier": stats["by_tier"],
            "oldest_due_age_s": oldest_age_s,
            "live_workers": live_workers,
        },
    )


async def check_delivery(*, session: AsyncSession, now: datetime) -> ComponentHealth:
    settings = get_settings()
    since = now - timedelta(seconds=max(1, settings.health_window_s))
    rows = (
        await session.execute(
            select(DeliveryAttemptLog.outcome, func.count())
            .where(DeliveryAttemptLog.created_at >= since)
            .group_by(DeliveryAttemptLog.outcome)
        )
    ).all()
    by_outcome = {str(outcome): int(count) for outcome, count in rows}
    circuit_open = by_outcome.get(OUTCOME_CIRCUIT_OPEN, 0)
    # Breaker short-circuits are tracked on their own and do not dilute the ratio.
    attempted = sum(count for outcome, count in by_outcome.items() if outcome != OUTCOME_CIRCUIT_OPEN)
    successes = by_outcome.get(OUTCOME_SUCCESS, 0)
    ratio = (successes / attempted) if attempted else None
    floor = min(1.0, max(0.0, settings.health_success_floor))

    issues: list[HealthIssue] = []
    if ratio is None:
        factor = 1.0
    elif ratio < floor:
        factor = 0.0
        issues.append(
            HealthIssue(
                code="DELIVERY_SUCCESS_BELOW_FLOOR",
                severity="critical",
                component=COMPONENT_DELIVERY,
                message=f"delivery success ratio {ratio:.2f} is below {floor:.2f}",
                metric="success_ratio",
                value=round(ratio, 4),
                threshold=floor,
            )
        )
    elif floor >= 1.0:
        factor = 1.0
    else:
        factor = (ratio - floor) / (1.0 - floor)
    if circuit_open:
        issues.append(
            HealthIssue(
                code="CIRCUIT_SHORT_CIRCUITS",
                severity="info",
                component=COMPONENT_DELIVERY,
                message=f"{circuit_open} attempts short-circuited by open breakers",
                metric="circuit_open",
                value=circuit_open,
            )
        )
    return ComponentHealth(
        name=COMPONENT_DELIVERY,
        factor=factor,
        issues=issues,
        metrics={
            "window_s": settings.health_window_s,
            "attempts": attempted,
            "successes": successes,
            "success_ratio": ratio,
            "circuit_open": circuit_open,
            "by_outcome": by_outcome,
        },
    )


async def check_config(*, session: AsyncSession) -> ComponentHealth:
    """Report rules that cannot be delivered as configured. Nothing is modified."""
    settings = get_settings()
    rules = (await session.execute(select(Rule).where(Rule.enabled.is_(True)))).scalars().all()
    channels = {row.id: row for row in (await session.execute(select(Channel))).scalars().all()}
    usable_by_tenant: dict[str, int] = defaultdict(int)
    for channel in channels.values():
        if channel.active:
            usable_by_tenant[channel.tenant_id] += 1

    issues: list[HealthIssue] = []
    tenants_with_rules: set[str] = set()
    for rule in rules:
        tenants_with_rules.add(rule.tenant_id)
        try:
            canonicalize_event_type(rule.event_type, allow_wildcard=True)
            parse_predicate(rule.filter_predicate)
        except ChatRelayError as exc:
            issues.append(
                HealthIssue(
                    code="RULE_INVALID",
                    severity="warning",
                    component=COMPONENT_CONFIG,
                    message=f"rule {rule.id} cannot be compiled: {exc}",
                    subject=rule.id,
                )
            )
        if not rule.target_channel_id:
            continue
        channel = channels.get(rule.target_channel_id)
        if channel is None:
            code, message = "RULE_CHANNEL_MISSING", f"rule {rule.id} targets missing channel {rule.target_channel_id}"
        elif channel.tenant_id != rule.tenant_id:
            code, message = "RULE_CHANNEL_CROSS_TENANT", f"rule {rule.id} targets a channel of another tenant"
        elif not channel.active:
            code, message = "RULE_CHANNEL_INACTIVE", f"rule {rule.id} targets inactive channel {channel.id}"
        else:
            continue
        issues.append(
            HealthIssue(code=code, severity="warning", component=COMPONENT_CONFIG, message=message, subject=rule.id)
        )

    for tenant_id in sorted(tenants_with_rules):
        if usable_by_tenant.get(tenant_id, 0) == 0:
            issues.append(
                HealthIssue(
                    code="TENANT_NO_USABLE_CHANNEL",
                    severity="critical",
                    component=COMPONENT_CONFIG,
                    message=f"tenant {tenant_id} has enabled rules but no active channel",
                    subject=tenant_id,
                    requires_ack=True,
                )
            )

    budget = max(1, settings.health_config_issue_budget)
    return ComponentHealth(
        name=COMPONENT_CONFIG,
        factor=1.0 - min(1.0, len(issues) / budget),
        issues=issues,
        metrics={"enabled_rules": len(rules), "channels": len(channels), "issues": len(issues)},
    )


async def check_breakers(*, session: AsyncSession) -> ComponentHealth:
    settings = get_settings()
    rows = (
        await session.execute(select(CircuitState).where(CircuitState.state != CIRCUIT_CLOSED))
    ).scalars().all()
    budget = max(1, settings.health_breaker_open_budget)
    issues = [
        HealthIssue(
            code="CIRCUIT_OPEN",
            severity="warning",
            component=COMPONENT_BREAKERS,
            message=f"breaker for channel {row.channel_id} is {row.state}",
            metric="open_count",
            value=row.open_count,
            subject=row.channel_id,
        )
        for row in rows
    ]
    if len(rows) >= budget:
        issues.append(
            HealthIssue(
                code="CIRCUITS_OPEN_BUDGET_EXCEEDED",
                severity="critical",
                component=COMPONENT_BREAKERS,
                message=f"{len(rows)} channel breakers are not closed",
                metric="open_breakers",
                value=len(rows),
                threshold=budget,
            )
        )
    return ComponentHealth(
        name=COMPONENT_BREAKERS,
        factor=1.0 - min(1.0, len(rows) / budget),
        issues=issues,
        metrics={"open_breakers": len(rows), "channels": [row.channel_id for row in rows]},
    )


async def _prune_older_than(session: AsyncSession, model: Any, column: Any, cutoff: datetime, limit: int) -> int:
    ids = (await session.execute(select(model.id).where(column < cutoff).limit(limit))).scalars().all()
    if not ids:
        return 0
    await session.execute(delete(model).where(model.id.in_(list(ids))))
    await session.commit()
    return len(ids)


async def apply_auto_fixes(
    *,
    session: AsyncSession,
    now: datetime,
    queue: DeliveryQueue | None = None,
) -> dict[str, int]:
    # Safe fixes only: lease reclamation, overdue retry promotion and retention pruning.
    settings = get_settings()
    limit = max(1, settings.health_auto_fix_limit)
    queue = queue or DeliveryQueue(clock=lambda: now)
    fixes = {
        "reclaimed_claims": await queue.reclaim_expired(session=session, limit=limit),
        "promoted_retries": await queue.promote_due_retries(session=session, limit=limit),
        "pruned_attempt_logs": 0,
        "pruned_snapshots": 0,
    }
    if settings.health_retention_days > 0:
        cutoff = now - timedelta(days=settings.health_retention_days)
        fixes["pruned_attempt_logs"] = await _prune_older_than(
            session, DeliveryAttemptLog, DeliveryAttemptLog.created_at, cutoff, limit
        )
        fixes["pruned_snapshots"] = await _prune_older_than(
            session, HealthSnapshot, HealthSnapshot.timestamp, cutoff, limit
        )
    for name, count in fixes.items():
        if count:
            increment_counter(f"health_auto_fix_total.{name}", count)
            logger.info("health_auto_fix name=%s count=%s", name, count)
    return fixes


def _alert_candidates(report: HealthReport) -> list[AlertCandidate]:
    candidates = [
        AlertCandidate(
            alert_key=issue.alert_key,
            severity=issue.severity,
            title=issue.code.replace("_", " ").lower(),
            component=issue.component,
            description=issue.message,
            metric_name=issue.metric,
            current_value=issue.value,
            threshold_value=issue.threshold,
        )
        for issue in report.issues
        if issue.severity == "critical" or issue.requires_ack
    ]
    if report.status == "critical":
        candidates.append(
            AlertCandidate(
                alert_key=f"{PIPELINE}:HEALTH_CRITICAL",
                severity="critical",
                title="pipeline health critical",
                component=PIPELINE,
                description=f"pipeline health score {report.score} is below {DEGRADED_MIN_SCORE}",
                metric_name="health_score",
                current_value=report.score,
                threshold_value=DEGRADED_MIN_SCORE,
            )
        )
    return candidates


async def run_health_check(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    queue: DeliveryQueue | None = None,
    apply_fixes: bool = True,
    raise_alerts: bool = True,
) -> HealthReport:
    """Run auto-fixes, score every component, persist snapshots and reconcile alerts."""
    now = now or _utc_now()
    fixes = (
        await apply_auto_fixes(session=session, now=now, queue=queue)
        if apply_fixes
        else {}
    )
    components = {
        COMPONENT_DELIVERY: await check_delivery(session=session, now=now),
        COMPONENT_QUEUE: await check_queue(session=session, now=now, queue=queue),
        COMPONENT_BREAKERS: await check_breakers(session=session),
        COMPONENT_CONFIG: await check_config(session=session),
    }
    score = composite_score(components)
    report = HealthReport(
        score=score,
        status=classify_score(score),
        checked_at=now,
        components=components,
        issues=[issue for component in components.values() for issue in component.issues],
        auto_fixes=fixes,
    )

    session.add(
        HealthSnapshot(
            timestamp=now,
            component=PIPELINE,
            score=report.score,
            status=report.status,
            issues=[issue.as_dict() for issue in report.issues],
            metrics={"auto_fixes": fixes, "weights": WEIGHTS},
        )
    )
    for name, component in components.items():
        session.add(
            HealthSnapshot(
                timestamp=now,
                component=name,
                score=component.score,
                status=component.status,
                issues=[issue.as_dict() for issue in component.issues],
                metrics=component.metrics,
            )
        )
    await session.commit()

    set_gauge("health_score", report.score)
    for name, component in components.items():
        set_gauge(f"health_component_score.{name}", component.score)
    if raise_alerts:
        await sync_alerts(session=session, candidates=_alert_candidates(report), now=now)
    log = logger.warning if report.status != "healthy" else logger.info
    log("health_check_completed score=%s status=%s issues=%s", report.score, report.status, len(report.issues))
    return report


async def run_health_monitor_cycle(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    # Only one monitor instance evaluates per interval.
    settings = get_settings()
    lock = await acquire_lock(HEALTH_MONITOR_LOCK_KEY, ttl_s=settings.health_lock_ttl_s)
    if lock is None:
        return {"status": "skipped_lock"}
    try:
        try:
            async with (session_factory or SessionLocal)() as session:
                report = await run_health_check(session)
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations"}
            raise
    finally:
        await release_lock(lock)
    return {"status": "ok", "score": report.score, "health": report.status, "auto_fixes": report.auto_fixes}


async def run_health_monitor_loop(stop_event: asyncio.Event | None = None) -> None:
    interval_s = max(1, int(get_settings().health_check_interval_s))
    stop_event = stop_event or asyncio.Event()
    while not stop_event.is_set():
        try:
            await run_health_monitor_cycle()
        except Exception:  # noqa: BLE001 - keep the monitor alive while surfacing failures in logs.
            logger.exception("health monitor cycle failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            pass


async def latest_snapshots(*, session: AsyncSession) -> dict[str, HealthSnapshot]:
    # Newest snapshot per component for the pipeline status view.
    newest = (
        select(HealthSnapshot.component, func.max(HealthSnapshot.timestamp).label("ts"))
        .group_by(HealthSnapshot.component)
        .subquery()
    )
    rows = (
        await session.execute(
            select(HealthSnapshot)
            .join(
                newest,
                (HealthSnapshot.component == newest.c.component) & (HealthSnapshot.timestamp == newest.c.ts),
            )
            .order_by(HealthSnapshot.id.desc())
        )
    ).scalars().all()
    result: dict[str, HealthSnapshot] = {}
    for row in rows:
        result.setdefault(row.component, row)
    return result


async def snapshot_history(
    *,
    session: AsyncSession,
    component: str = PIPELINE,
    hours: float = 24,
    limit: int = 500,
) -> list[HealthSnapshot]:
    since = _utc_now() - timedelta(hours=max(0.0, float(hours)))
    rows = (
        await session.execute(
            select(HealthSnapshot)
            .where(HealthSnapshot.component == component, HealthSnapshot.timestamp >= since)
            .order_by(HealthSnapshot.timestamp.asc())
            .limit(max(1, min(limit, 5000)))
        )
    ).scalars().all()
    return list(rows)
