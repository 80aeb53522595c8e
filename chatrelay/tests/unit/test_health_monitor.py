from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from chatrelay.core.errors import AlertStateError
from chatrelay.domain.models import DeliveryAttemptLog, DeliveryJob, HealthAlert, HealthSnapshot, Rule
from chatrelay.domain.state import (
    ALERT_ACKNOWLEDGED,
    ALERT_RESOLVED,
    JOB_PENDING,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services import coordination
from chatrelay.services.coordination import HEALTH_MONITOR_LOCK_KEY, acquire_lock, release_lock
from chatrelay.services.delivery import DeliveryQueue
from chatrelay.services.health import (
    acknowledge_alert,
    latest_snapshots,
    list_alerts,
    resolve_alert,
    run_health_check,
    run_health_monitor_cycle,
)
from chatrelay.tests.utils.fake_redis import FakeRedis
from chatrelay.tests.utils.seed import ManualClock, enqueue_for, make_event, no_wakeup, seed_channel, seed_rule


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _seed_attempts(*, successes: int, failures: int, at: datetime) -> None:
    async with SessionLocal() as session:
        for index in range(successes + failures):
            session.add(
                DeliveryAttemptLog(
                    job_id=f"job-{index}",
                    attempt_no=1,
                    path="queue",
                    tenant_id="t-health",
                    outcome=OUTCOME_SUCCESS if index < successes else OUTCOME_FAILURE,
                    status_code=200 if index < successes else 500,
                    created_at=at,
                )
            )
        await session.commit()


async def _alerts() -> dict[str, HealthAlert]:
    async with SessionLocal() as session:
        rows = (await session.execute(select(HealthAlert))).scalars().all()
    return {row.alert_key: row for row in rows}


@pytest.mark.asyncio
async def test_low_success_ratio_is_critical_and_alerts_once_per_condition() -> None:
    now = _utc_now()
    await _seed_attempts(successes=2, failures=8, at=now - timedelta(seconds=60))

    async with SessionLocal() as session:
        report = await run_health_check(session, now=now)
    assert report.score == 60
    assert report.status == "critical"
    assert report.components["delivery"].score == 0
    assert report.components["delivery"].metrics["success_ratio"] == pytest.approx(0.2)

    alerts = await _alerts()
    assert set(alerts) == {"delivery:DELIVERY_SUCCESS_BELOW_FLOOR", "pipeline:HEALTH_CRITICAL"}

    # A sustained breach refreshes the same alerts instead of raising new ones.
    async with SessionLocal() as session:
        await run_health_check(session, now=now + timedelta(seconds=30))
    alerts = await _alerts()
    assert len(alerts) == 2
    assert {row.occurrences for row in alerts.values()} == {2}

    # Once the failures age out of the window the alerts clear and auto-resolve.
    async with SessionLocal() as session:
        recovered = await run_health_check(session, now=now + timedelta(seconds=900 + 60))
    assert recovered.status == "healthy"
    for row in (await _alerts()).values():
        assert row.status == ALERT_RESOLVED
        assert row.resolved_by == "health_monitor"
        assert row.cleared_at is not None


@pytest.mark.asyncio
async def test_healthy_run_persists_pipeline_and_component_snapshots() -> None:
    async with SessionLocal() as session:
        report = await run_health_check(session)
    assert (report.score, report.status) == (100, "healthy")
    assert report.issues == []

    async with SessionLocal() as session:
        count = await session.scalar(select(func.count()).select_from(HealthSnapshot))
        latest = await latest_snapshots(session=session)
    assert count == 5
    assert set(latest) == {"pipeline", "delivery", "queue", "breakers", "config"}
    assert await _alerts() == {}


@pytest.mark.asyncio
async def test_auto_fix_reclaims_expired_claims_before_scoring() -> None:
    tenant = "t-health"
    channel_id = await seed_channel(tenant_id=tenant)
    rule_id = await seed_rule(tenant_id=tenant, event_type="deal.won", channel_id=channel_id)
    clock = ManualClock()
    queue = DeliveryQueue(clock=clock, publisher=no_wakeup, claim_visibility_s=30)

    job_id = await enqueue_for(queue, event=make_event(tenant_id=tenant, event_id="evt-hc"), rule_id=rule_id, channel_id=channel_id)
    async with SessionLocal() as session:
        assert await queue.claim_next(session=session, worker_id="w-crashed") is not None

    async with SessionLocal() as session:
        report = await run_health_check(session, now=clock.now + timedelta(seconds=60))
    assert report.auto_fixes["reclaimed_claims"] == 1
    assert report.components["queue"].metrics["in_flight"] == 0

    async with SessionLocal() as session:
        job = await session.get(DeliveryJob, job_id)
    assert job.status == JOB_PENDING
    assert job.claimed_by is None


@pytest.mark.asyncio
async def test_config_issues_are_reported_without_changing_rules() -> None:
    channel_id = await seed_channel(tenant_id="t-cfg", active=False)
    rule_id = await seed_rule(tenant_id="t-cfg", event_type="deal.won", channel_id=channel_id)

    async with SessionLocal() as session:
        report = await run_health_check(session)
    codes = {issue.code for issue in report.components["config"].issues}
    assert codes == {"RULE_CHANNEL_INACTIVE", "TENANT_NO_USABLE_CHANNEL"}
    assert report.components["config"].score == 60
    assert report.score == 92

    alerts = await _alerts()
    assert set(alerts) == {"config:TENANT_NO_USABLE_CHANNEL:t-cfg"}

    async with SessionLocal() as session:
        rule = await session.get(Rule, rule_id)
    assert rule.enabled is True
    assert rule.target_channel_id == channel_id


@pytest.mark.asyncio
async def test_backlog_without_live_workers_is_flagged(monkeypatch) -> None:
    redis = FakeRedis()

    async def _redis():  # type: ignore[override]
        return redis

    monkeypatch.setattr(coordination, "get_redis", _redis)
    now = _utc_now()
    await redis.hset(coordination.WORKER_HEARTBEATS_KEY, "pool-old-0", (now - timedelta(seconds=600)).isoformat())

    tenant = "t-health"
    channel_id = await seed_channel(tenant_id=tenant)
    rule_id = await seed_rule(tenant_id=tenant, event_type="deal.won", channel_id=channel_id)
    queue = DeliveryQueue(clock=lambda: now, publisher=no_wakeup)

    await enqueue_for(queue, event=make_event(tenant_id=tenant, event_id="evt-idle"), rule_id=rule_id, channel_id=channel_id)

    async with SessionLocal() as session:
        report = await run_health_check(session, now=now)
    assert "NO_LIVE_WORKERS" in {issue.code for issue in report.issues}
    assert report.components["queue"].score == 0
    assert report.status == "degraded"
    assert "queue:NO_LIVE_WORKERS" in await _alerts()


@pytest.mark.asyncio
async def test_alert_acknowledge_and_resolve_lifecycle() -> None:
    now = _utc_now()
    await _seed_attempts(successes=0, failures=5, at=now - timedelta(seconds=10))
    async with SessionLocal() as session:
        await run_health_check(session, now=now)
        open_alerts = await list_alerts(session=session)
    alert_id = next(row.id for row in open_alerts if row.alert_key == "pipeline:HEALTH_CRITICAL")

    async with SessionLocal() as session:
        acked = await acknowledge_alert(session=session, alert_id=alert_id, actor_id="oncall")
        assert acked.status == ALERT_ACKNOWLEDGED
        assert acked.acknowledged_by == "oncall"
        with pytest.raises(AlertStateError):
            await acknowledge_alert(session=session, alert_id=alert_id, actor_id="oncall")

        resolved = await resolve_alert(session=session, alert_id=alert_id, actor_id="oncall")
        assert resolved.status == ALERT_RESOLVED
        with pytest.raises(AlertStateError):
            await resolve_alert(session=session, alert_id=alert_id, actor_id="oncall")

        assert await acknowledge_alert(session=session, alert_id="missing", actor_id="oncall") is None
        remaining = {row.alert_key for row in await list_alerts(session=session)}
    assert "pipeline:HEALTH_CRITICAL" not in remaining
    assert "delivery:DELIVERY_SUCCESS_BELOW_FLOOR" in remaining


@pytest.mark.asyncio
async def test_monitor_cycle_runs_once_per_lock_holder() -> None:
    result = await run_health_monitor_cycle()
    assert result["status"] == "ok"
    assert result["health"] == "healthy"

    held = await acquire_lock(HEALTH_MONITOR_LOCK_KEY, ttl_s=30)
    assert held is not None
    try:
        assert await run_health_monitor_cycle() == {"status": "skipped_lock"}
    finally:
        await release_lock(held)
