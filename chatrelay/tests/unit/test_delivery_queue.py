from __future__ import annotations

import pytest
from sqlalchemy import select

from chatrelay.core.errors import EnqueueError
from chatrelay.domain.models import DeliveryJob
from chatrelay.domain.state import JOB_IN_FLIGHT, JOB_PENDING, JOB_SUCCEEDED, TIER_IMMEDIATE
from chatrelay.persistence.db import SessionLocal, engine
from chatrelay.services.delivery.queue import DeliveryQueue
from chatrelay.services.matcher import RuleMatch
from chatrelay.tests.utils.seed import ManualClock, make_event, make_rule


def _matches(count: int) -> list[RuleMatch]:
    return [RuleMatch(rule=make_rule(rule_id=f"rule-{index}"), channel_id="ch-unit") for index in range(count)]


async def _no_wakeup(job_id: str) -> bool:
    return False


def _queue(clock: ManualClock, **kwargs) -> DeliveryQueue:
    return DeliveryQueue(clock=clock, publisher=_no_wakeup, **kwargs)


async def _jobs() -> list[DeliveryJob]:
    async with SessionLocal() as session:
        return list((await session.execute(select(DeliveryJob).order_by(DeliveryJob.rule_id))).scalars().all())


@pytest.mark.asyncio
async def test_enqueue_creates_one_job_per_matching_rule() -> None:
    clock = ManualClock()
    event = make_event(event_id="evt-fanout")
    async with SessionLocal() as session:
        result = await _queue(clock).enqueue(session=session, event=event, matches=_matches(3))
    assert len(result.job_ids) == 3
    assert result.duplicate_count == 0

    jobs = await _jobs()
    assert [job.rule_id for job in jobs] == ["rule-0", "rule-1", "rule-2"]
    assert {job.dedupe_key for job in jobs} == {event.dedupe_key}
    assert all(job.status == JOB_PENDING and job.tier == TIER_IMMEDIATE for job in jobs)
    assert all(job.priority == event.priority for job in jobs)


@pytest.mark.asyncio
async def test_reingesting_the_same_event_is_idempotent() -> None:
    clock = ManualClock()
    queue = _queue(clock)
    event = make_event(event_id="evt-again")
    async with SessionLocal() as session:
        await queue.enqueue(session=session, event=event, matches=_matches(2))
        again = await queue.enqueue(session=session, event=event, matches=_matches(2))
    assert again.job_ids == []
    assert again.duplicate_count == 2
    assert len(await _jobs()) == 2


@pytest.mark.asyncio
async def test_recent_success_blocks_redelivery_only_inside_the_window() -> None:
    clock = ManualClock()
    event = make_event(event_id="evt-window")
    queue = _queue(clock, dedupe_window_s=60)
    async with SessionLocal() as session:
        created = await queue.enqueue(session=session, event=event, matches=_matches(1))
        job = await queue.claim_next(session=session, worker_id="w-1")
        assert job is not None and job.id == created.job_ids[0]
        assert await queue.ack(session=session, job_id=job.id, worker_id="w-1") is True

        blocked = await queue.enqueue(session=session, event=event, matches=_matches(1))
        assert blocked.job_ids == [] and blocked.duplicate_count == 1

        clock.advance(61)
        allowed = await queue.enqueue(session=session, event=event, matches=_matches(1))
        assert len(allowed.job_ids) == 1


@pytest.mark.asyncio
async def test_claims_are_exclusive() -> None:
    clock = ManualClock()
    queue = _queue(clock)
    async with SessionLocal() as session:
        await queue.enqueue(session=session, event=make_event(event_id="evt-claim"), matches=_matches(1))
    async with SessionLocal() as first, SessionLocal() as second:
        claimed = await queue.claim_next(session=first, worker_id="w-1")
        assert claimed is not None
        assert claimed.status == JOB_IN_FLIGHT
        assert claimed.claimed_by == "w-1"
        assert await queue.claim_next(session=second, worker_id="w-2") is None
        assert await queue.claim(session=second, job_id=claimed.id, worker_id="w-2") is None


@pytest.mark.asyncio
async def test_claims_follow_priority_order() -> None:
    clock = ManualClock()
    queue = _queue(clock)
    normal = make_event(event_id="evt-normal")
    normal_payload = normal.to_json()
    normal_payload["priority"] = 5
    async with SessionLocal() as session:
        await queue.enqueue(session=session, event=type(normal).from_json(normal_payload), matches=_matches(1))
        urgent = make_event(event_id="evt-urgent")
        await queue.enqueue(session=session, event=urgent, matches=[RuleMatch(rule=make_rule(rule_id="urgent"), channel_id="ch-unit")])
        first = await queue.claim_next(session=session, worker_id="w-1")
    assert first is not None
    assert first.rule_id == "urgent"


@pytest.mark.asyncio
async def test_expired_claim_is_reexposed_exactly_once() -> None:
    clock = ManualClock()
    queue = _queue(clock, claim_visibility_s=30)
    async with SessionLocal() as session:
        await queue.enqueue(session=session, event=make_event(event_id="evt-lease"), matches=_matches(1))
        claimed = await queue.claim_next(session=session, worker_id="w-dead")
        assert claimed is not None
        job_id = claimed.id

        clock.advance(10)
        assert await queue.reclaim_expired(session=session) == 0

        clock.advance(25)
        assert await queue.reclaim_expired(session=session) == 1
        assert await queue.reclaim_expired(session=session) == 0

        job = await session.get(DeliveryJob, job_id, populate_existing=True)
        assert job.status == JOB_PENDING
        assert job.attempt_count == 0
        assert job.claimed_by is None

        # The crashed worker can no longer acknowledge; the new claimant can.
        reclaimed = await queue.claim_next(session=session, worker_id="w-new")
        assert reclaimed is not None and reclaimed.id == job_id
        assert await queue.ack(session=session, job_id=job_id, worker_id="w-dead") is False
        assert await queue.ack(session=session, job_id=job_id, worker_id="w-new") is True

    jobs = await _jobs()
    assert [job.status for job in jobs] == [JOB_SUCCEEDED]


@pytest.mark.asyncio
async def test_stats_report_backlog_by_tier() -> None:
    clock = ManualClock()
    queue = _queue(clock)
    async with SessionLocal() as session:
        await queue.enqueue(session=session, event=make_event(event_id="evt-stats"), matches=_matches(3))
        await queue.claim_next(session=session, worker_id="w-1")
        clock.advance(12)
        stats = await queue.stats(session=session)
    assert stats["backlog"] == 3
    assert stats["in_flight"] == 1
    assert stats["by_status"] == {JOB_PENDING: 2, JOB_IN_FLIGHT: 1}
    assert stats["by_tier"] == {"immediate": 3, "delayed": 0, "dead_letter": 0}
    assert stats["oldest_due_age_s"] == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_enqueue_raises_enqueue_error_when_the_store_is_down() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(DeliveryJob.__table__.drop)
    async with SessionLocal() as session:
        with pytest.raises(EnqueueError):
            await _queue(ManualClock()).enqueue(session=session, event=make_event(event_id="evt-down"), matches=_matches(1))
