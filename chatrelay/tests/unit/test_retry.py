from __future__ import annotations

import pytest
from sqlalchemy import select

from chatrelay.core.errors import JobStateError
from chatrelay.domain.models import AuditEvent, DeliveryJob
from chatrelay.domain.state import (
    JOB_FAILED_RETRYABLE,
    JOB_FAILED_TERMINAL,
    JOB_PENDING,
    JOB_SUCCEEDED,
    TIER_DEAD_LETTER,
    TIER_DELAYED,
    TIER_IMMEDIATE,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.delivery import (
    RecoveryFilter,
    list_job_attempts,
    retry_delay_seconds,
    retry_jobs,
    run_maintenance_cycle,
)
from chatrelay.tests.utils.seed import (
    ChatEndpoint,
    ManualClock,
    build_worker,
    enqueue_for,
    make_event,
    no_wakeup,
    seed_channel,
    seed_rule,
)


async def _job(job_id: str) -> DeliveryJob:
    async with SessionLocal() as session:
        return await session.get(DeliveryJob, job_id)


async def _insert_job(*, tenant_id: str, status: str, tier: int, dedupe_key: str | None = None) -> str:
    job = DeliveryJob(
        dedupe_key=dedupe_key or f"{tenant_id}:deal.won:{status}",
        tenant_id=tenant_id,
        rule_id="rule-x",
        channel_id="ch-x",
        event_type="deal.won",
        event_json={},
        status=status,
        tier=tier,
        attempt_count=3,
        max_attempts=3,
        priority=1,
    )
    async with SessionLocal() as session:
        session.add(job)
        await session.commit()
        return job.id


def test_backoff_doubles_per_failure_and_caps() -> None:
    assert retry_delay_seconds(attempt_count=1, base_s=5, max_s=900) == 10
    assert retry_delay_seconds(attempt_count=3, base_s=5, max_s=900) == 40
    assert retry_delay_seconds(attempt_count=10, base_s=5, max_s=900) == 900


@pytest.mark.asyncio
async def test_exhausted_job_dead_letters_and_only_manual_retry_revives_it() -> None:
    tenant = "t-retry"
    channel_id = await seed_channel(tenant_id=tenant)
    rule_id = await seed_rule(tenant_id=tenant, event_type="deal.won", channel_id=channel_id)
    clock = ManualClock()
    endpoint = ChatEndpoint([500, 500])
    worker = build_worker(endpoint, clock)
    job_id = await enqueue_for(
        worker,
        event=make_event(tenant_id=tenant, event_id="evt-dlq"),
        rule_id=rule_id,
        channel_id=channel_id,
        max_attempts=2,
    )

    assert await worker.run_once() is True
    job = await _job(job_id)
    assert (job.status, job.tier, job.attempt_count) == (JOB_FAILED_RETRYABLE, TIER_DELAYED, 1)
    # Backoff has not elapsed, so nothing is claimable yet.
    assert await worker.run_once() is False

    clock.advance(3)
    assert (await run_maintenance_cycle(queue=worker.queue))["promoted"] == 1
    assert await worker.run_once() is True
    job = await _job(job_id)
    assert (job.status, job.tier, job.attempt_count) == (JOB_FAILED_TERMINAL, TIER_DEAD_LETTER, 2)
    assert job.completed_at is not None

    # Dead-lettered jobs are never picked up again automatically.
    clock.advance(3600)
    assert await run_maintenance_cycle(queue=worker.queue) == {"status": "ok", "reclaimed": 0, "promoted": 0}
    assert await worker.run_once() is False
    assert len(endpoint.requests) == 2

    async with SessionLocal() as session:
        attempts = await list_job_attempts(session=session, job_id=job_id)
    assert [(item.attempt_no, item.status_code) for item in attempts] == [(1, 500), (2, 500)]

    async with SessionLocal() as session:
        result = await retry_jobs(session=session, job_id=job_id, actor_id="ops-1", publisher=no_wakeup, clock=clock)
    assert result.retried_count == 1
    assert result.job_ids == [job_id]
    job = await _job(job_id)
    assert (job.status, job.tier, job.attempt_count) == (JOB_PENDING, TIER_IMMEDIATE, 0)

    async with SessionLocal() as session:
        audit = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "delivery.jobs.manual_retry"))
        ).scalars().all()
    assert len(audit) == 1
    assert audit[0].actor_id == "ops-1"
    assert audit[0].tenant_id == tenant

    assert await worker.run_once() is True
    assert (await _job(job_id)).status == JOB_SUCCEEDED


@pytest.mark.asyncio
async def test_manual_retry_rejects_unrecoverable_targets() -> None:
    succeeded = await _insert_job(tenant_id="t-a", status=JOB_SUCCEEDED, tier=TIER_IMMEDIATE)
    async with SessionLocal() as session:
        with pytest.raises(JobStateError) as not_recoverable:
            await retry_jobs(session=session, job_id=succeeded, publisher=no_wakeup)
        with pytest.raises(JobStateError) as not_found:
            await retry_jobs(session=session, job_id="missing-job", publisher=no_wakeup)
        with pytest.raises(JobStateError) as no_target:
            await retry_jobs(session=session, publisher=no_wakeup)
        with pytest.raises(JobStateError) as bad_filter:
            await retry_jobs(session=session, recovery_filter=RecoveryFilter(status=JOB_SUCCEEDED), publisher=no_wakeup)
    assert not_recoverable.value.code == "JOB_NOT_RECOVERABLE"
    assert not_found.value.code == "JOB_NOT_FOUND"
    assert no_target.value.code == "RECOVERY_TARGET_REQUIRED"
    assert bad_filter.value.code == "JOB_NOT_RECOVERABLE"


@pytest.mark.asyncio
async def test_manual_retry_refuses_when_an_active_duplicate_exists() -> None:
    dead = await _insert_job(tenant_id="t-a", status=JOB_FAILED_TERMINAL, tier=TIER_DEAD_LETTER, dedupe_key="same")
    await _insert_job(tenant_id="t-a", status=JOB_PENDING, tier=TIER_IMMEDIATE, dedupe_key="same")
    async with SessionLocal() as session:
        with pytest.raises(JobStateError) as exc:
            await retry_jobs(session=session, job_id=dead, publisher=no_wakeup)
    assert exc.value.code == "ACTIVE_DUPLICATE"
    assert (await _job(dead)).status == JOB_FAILED_TERMINAL


@pytest.mark.asyncio
async def test_filter_retry_only_touches_matching_dead_letters() -> None:
    first = await _insert_job(tenant_id="t-a", status=JOB_FAILED_TERMINAL, tier=TIER_DEAD_LETTER, dedupe_key="a-1")
    second = await _insert_job(tenant_id="t-a", status=JOB_FAILED_TERMINAL, tier=TIER_DEAD_LETTER, dedupe_key="a-2")
    other = await _insert_job(tenant_id="t-b", status=JOB_FAILED_TERMINAL, tier=TIER_DEAD_LETTER, dedupe_key="b-1")

    async with SessionLocal() as session:
        result = await retry_jobs(session=session, recovery_filter=RecoveryFilter(tenant_id="t-a"), publisher=no_wakeup)
    assert sorted(result.job_ids) == sorted([first, second])
    assert result.skipped == []
    assert (await _job(first)).status == JOB_PENDING
    assert (await _job(other)).status == JOB_FAILED_TERMINAL
