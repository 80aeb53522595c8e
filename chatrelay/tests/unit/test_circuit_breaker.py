from __future__ import annotations

from datetime import timedelta

import pytest

from chatrelay.core.errors import CircuitOpenError
from chatrelay.domain.models import DeliveryJob
from chatrelay.domain.state import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    JOB_FAILED_RETRYABLE,
    OUTCOME_CIRCUIT_OPEN,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.delivery import ChannelCircuitBreaker, CircuitBreakerConfig, list_job_attempts
from chatrelay.tests.utils.seed import (
    ChatEndpoint,
    ManualClock,
    build_worker,
    enqueue_for,
    make_event,
    relaxed_breaker_config,
    seed_channel,
    seed_rule,
)


CHANNEL = "ch-breaker"


def _config(**overrides) -> CircuitBreakerConfig:
    values = {
        "failure_threshold": 3,
        "failure_rate": 0.5,
        "window_s": 60,
        "cooldown_s": 30,
        "max_cooldown_s": 100,
        "probe_timeout_s": 10,
    }
    values.update(overrides)
    return CircuitBreakerConfig(**values)


class _Transitions:
    def __init__(self) -> None:
        self.seen: list[tuple[str, str, str]] = []

    async def __call__(self, channel_id: str, source: str, target: str) -> None:
        self.seen.append((channel_id, source, target))


async def _fail(breaker: ChannelCircuitBreaker, times: int) -> None:
    for _ in range(times):
        permit = await breaker.before_call(CHANNEL)
        await breaker.record_failure(permit)


async def _succeed(breaker: ChannelCircuitBreaker, times: int) -> None:
    for _ in range(times):
        permit = await breaker.before_call(CHANNEL)
        await breaker.record_success(permit)


def test_cooldown_doubles_per_consecutive_open_and_caps() -> None:
    breaker = ChannelCircuitBreaker(config=_config())
    assert breaker.cooldown_for(1) == timedelta(seconds=30)
    assert breaker.cooldown_for(2) == timedelta(seconds=60)
    assert breaker.cooldown_for(3) == timedelta(seconds=100)


@pytest.mark.asyncio
async def test_breaker_opens_at_threshold_and_rejects_without_calling() -> None:
    clock = ManualClock()
    transitions = _Transitions()
    breaker = ChannelCircuitBreaker(config=_config(), time_source=clock, on_transition=transitions)

    await _fail(breaker, 2)
    state = await breaker.get_state(CHANNEL)
    assert (state.state, state.failure_count) == (CIRCUIT_CLOSED, 2)

    await _fail(breaker, 1)
    state = await breaker.get_state(CHANNEL)
    assert state.state == CIRCUIT_OPEN
    assert state.open_count == 1
    assert transitions.seen == [(CHANNEL, CIRCUIT_CLOSED, CIRCUIT_OPEN)]

    with pytest.raises(CircuitOpenError) as exc:
        await breaker.before_call(CHANNEL)
    assert exc.value.channel_id == CHANNEL
    assert exc.value.retry_at == clock.now + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_low_failure_ratio_keeps_the_breaker_closed() -> None:
    breaker = ChannelCircuitBreaker(config=_config(), time_source=ManualClock())
    await _succeed(breaker, 4)
    await _fail(breaker, 3)
    assert (await breaker.get_state(CHANNEL)).state == CIRCUIT_CLOSED

    # 4 failures out of 8 reaches the configured rate.
    await _fail(breaker, 1)
    assert (await breaker.get_state(CHANNEL)).state == CIRCUIT_OPEN


@pytest.mark.asyncio
async def test_failures_outside_the_window_are_forgotten() -> None:
    clock = ManualClock()
    breaker = ChannelCircuitBreaker(config=_config(), time_source=clock)
    await _fail(breaker, 2)
    clock.advance(121)
    await _fail(breaker, 2)
    state = await breaker.get_state(CHANNEL)
    assert (state.state, state.failure_count, state.prev_failure_count) == (CIRCUIT_CLOSED, 2, 0)


@pytest.mark.asyncio
async def test_failures_straddling_a_window_boundary_still_trip() -> None:
    clock = ManualClock()
    breaker = ChannelCircuitBreaker(config=_config(), time_source=clock)
    await _fail(breaker, 2)
    # 10s into the next window the previous bucket still weighs 50/60.
    clock.advance(70)
    await _fail(breaker, 1)
    state = await breaker.get_state(CHANNEL)
    assert (state.state, state.failure_count, state.prev_failure_count) == (CIRCUIT_CLOSED, 1, 2)

    await _fail(breaker, 1)
    assert (await breaker.get_state(CHANNEL)).state == CIRCUIT_OPEN


@pytest.mark.asyncio
async def test_half_open_admits_a_single_probe() -> None:
    clock = ManualClock()
    transitions = _Transitions()
    breaker = ChannelCircuitBreaker(config=_config(), time_source=clock, on_transition=transitions)
    await _fail(breaker, 3)

    clock.advance(30)
    probe = await breaker.before_call(CHANNEL)
    assert probe.probe is True
    assert (await breaker.get_state(CHANNEL)).state == CIRCUIT_HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.before_call(CHANNEL)

    # Failed probe reopens with a doubled cooldown.
    await breaker.record_failure(probe)
    state = await breaker.get_state(CHANNEL)
    assert (state.state, state.open_count) == (CIRCUIT_OPEN, 2)
    assert state.next_probe_at == clock.now + timedelta(seconds=60)

    clock.advance(60)
    probe = await breaker.before_call(CHANNEL)
    await breaker.record_success(probe)
    state = await breaker.get_state(CHANNEL)
    assert (state.state, state.open_count, state.failure_count) == (CIRCUIT_CLOSED, 0, 0)
    assert [target for _, _, target in transitions.seen] == [
        CIRCUIT_OPEN,
        CIRCUIT_HALF_OPEN,
        CIRCUIT_OPEN,
        CIRCUIT_HALF_OPEN,
        CIRCUIT_CLOSED,
    ]


@pytest.mark.asyncio
async def test_abandoned_probe_is_taken_over_after_timeout() -> None:
    clock = ManualClock()
    breaker = ChannelCircuitBreaker(config=_config(), time_source=clock)
    await _fail(breaker, 3)
    clock.advance(30)
    abandoned = await breaker.before_call(CHANNEL)
    assert abandoned.probe is True

    clock.advance(5)
    with pytest.raises(CircuitOpenError):
        await breaker.before_call(CHANNEL)

    clock.advance(6)
    takeover = await breaker.before_call(CHANNEL)
    assert takeover.probe is True
    await breaker.record_success(takeover)
    assert (await breaker.get_state(CHANNEL)).state == CIRCUIT_CLOSED


@pytest.mark.asyncio
async def test_reset_forces_the_breaker_closed(caplog: pytest.LogCaptureFixture) -> None:
    breaker = ChannelCircuitBreaker(config=_config(), time_source=ManualClock())
    with caplog.at_level("WARNING", logger="chatrelay.services.delivery.circuit_breaker"):
        await _fail(breaker, 3)
        state = await breaker.reset(CHANNEL)
    assert state.state == CIRCUIT_CLOSED
    assert "circuit_breaker_transition" in caplog.text
    assert (await breaker.before_call(CHANNEL)).probe is False


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_worker_deliveries() -> None:
    tenant = "t-breaker"
    channel_id = await seed_channel(tenant_id=tenant)
    rule_id = await seed_rule(tenant_id=tenant, event_type="deal.won", channel_id=channel_id)
    endpoint = ChatEndpoint(default_status=503)
    worker = build_worker(
        endpoint,
        ManualClock(),
        breaker_config=relaxed_breaker_config(failure_threshold=2, failure_rate=0.5),
    )
    job_ids = [
        await enqueue_for(worker, event=make_event(tenant_id=tenant, event_id=f"evt-{index}"), rule_id=rule_id, channel_id=channel_id)
        for index in range(3)
    ]

    for _ in job_ids:
        assert await worker.run_once() is True

    # The third job never reached the network.
    assert len(endpoint.requests) == 2
    assert (await worker.breaker.get_state(channel_id)).state == CIRCUIT_OPEN

    async with SessionLocal() as session:
        outcomes = []
        for job_id in job_ids:
            job = await session.get(DeliveryJob, job_id)
            assert job.status == JOB_FAILED_RETRYABLE
            assert job.attempt_count == 1
            outcomes.extend(item.outcome for item in await list_job_attempts(session=session, job_id=job_id))
    assert outcomes.count(OUTCOME_CIRCUIT_OPEN) == 1
