from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.config import get_settings
from chatrelay.core.errors import CircuitOpenError
from chatrelay.domain.models import CircuitState
from chatrelay.domain.state import CIRCUIT_CLOSED, CIRCUIT_HALF_OPEN, CIRCUIT_OPEN
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Version conflicts mean another process moved the state; reload and decide again.
_MAX_CAS_ATTEMPTS = 5
_STATE_GAUGE = {CIRCUIT_CLOSED: 0.0, CIRCUIT_HALF_OPEN: 0.5, CIRCUIT_OPEN: 1.0}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    failure_rate: float
    window_s: int
    cooldown_s: int
    max_cooldown_s: int
    probe_timeout_s: int


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=max(1, settings.cb_failure_threshold),
        failure_rate=min(1.0, max(0.0, settings.cb_failure_rate)),
        window_s=max(1, settings.cb_window_s),
        cooldown_s=max(1, settings.cb_cooldown_s),
        max_cooldown_s=max(1, settings.cb_max_cooldown_s),
        probe_timeout_s=max(1, settings.cb_probe_timeout_s),
    )


@dataclass(frozen=True)
class CircuitPermit:
    channel_id: str
    # True for the single half-open trial call whose outcome decides the next state.
    probe: bool = False


@dataclass(frozen=True)
class _Window:
    """Sliding-window counter: the current bucket plus the previous one, weighted by overlap."""

    failures: int
    successes: int
    prev_failures: int
    prev_successes: int
    started_at: datetime

    def weighted(self, now: datetime, window_s: int) -> tuple[float, float]:
        overlap = max(0.0, 1.0 - (now - self.started_at).total_seconds() / window_s)
        return (
            self.failures + self.prev_failures * overlap,
            self.successes + self.prev_successes * overlap,
        )

    def columns(self) -> dict[str, Any]:
        return {
            "failure_count": self.failures,
            "success_count": self.successes,
            "prev_failure_count": self.prev_failures,
            "prev_success_count": self.prev_successes,
            "window_started_at": self.started_at,
        }


def _fresh_window(now: datetime) -> dict[str, Any]:
    return _Window(0, 0, 0, 0, now).columns()


class ChannelCircuitBreaker:
    """Per-channel breaker whose state lives in the shared database.

    Every transition is a compare-and-set on ``circuit_states.version`` so
    concurrent workers in different processes agree on one state, and only
    one of them wins the half-open probe.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], datetime] | None = None,
        on_transition: Callable[[str, str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._config = config or default_breaker_config()
        self._time = time_source
        self._on_transition = on_transition

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _now(self) -> datetime:
        return self._time() if self._time is not None else _utc_now()

    def cooldown_for(self, open_count: int) -> timedelta:
        # Each failed probe doubles the cooldown up to the configured ceiling.
        exponent = max(0, open_count - 1)
        seconds = min(self._config.max_cooldown_s, self._config.cooldown_s * (2**exponent))
        return timedelta(seconds=seconds)

    async def _load(self, session: AsyncSession, channel_id: str, now: datetime) -> CircuitState:
        row = await session.get(CircuitState, channel_id, populate_existing=True)
        if row is not None:
            return row
        session.add(
            CircuitState(
                channel_id=channel_id,
                state=CIRCUIT_CLOSED,
                **_fresh_window(now),
                open_count=0,
                version=0,
                updated_at=now,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # Another worker created the row first.
            await session.rollback()
        return await session.get(CircuitState, channel_id, populate_existing=True)

    async def _cas(self, session: AsyncSession, row: CircuitState, now: datetime, **values: Any) -> bool:
        result = await session.execute(
            update(CircuitState)
            .where(CircuitState.channel_id == row.channel_id, CircuitState.version == row.version)
            .values(version=row.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            increment_counter("circuit_breaker_cas_conflicts_total")
            return False
        return True

    async def _transition(self, channel_id: str, source: str, target: str) -> None:
        # Emit logs on state transitions for operator visibility.
        logger.warning("circuit_breaker_transition channel=%s from=%s to=%s", channel_id, source, target)
        increment_counter(f"circuit_breaker_transition_total.{target}")
        if target == CIRCUIT_OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{channel_id}", _STATE_GAUGE.get(target, 0.0))
        if self._on_transition is not None:
            await self._on_transition(channel_id, source, target)

    def _rolled_window(self, row: CircuitState, now: datetime) -> _Window:
        span = timedelta(seconds=self._config.window_s)
        started = row.window_started_at
        if started is None or now - started >= 2 * span:
            return _Window(0, 0, 0, 0, now)
        if now - started >= span:
            # The current bucket becomes the previous one; keep buckets aligned to the first start.
            return _Window(0, 0, row.failure_count, row.success_count, started + span)
        return _Window(
            row.failure_count,
            row.success_count,
            row.prev_failure_count or 0,
            row.prev_success_count or 0,
            started,
        )

    async def before_call(self, channel_id: str) -> CircuitPermit:
        """Return a permit for one call, or raise CircuitOpenError without any I/O to the channel."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                now = self._now()
                row = await self._load(session, channel_id, now)
                if row.state == CIRCUIT_CLOSED:
                    return CircuitPermit(channel_id=channel_id)
                if row.state == CIRCUIT_OPEN:
                    if row.next_probe_at is not None and now >= row.next_probe_at:
                        if await self._cas(session, row, now, state=CIRCUIT_HALF_OPEN, probe_started_at=now):
                            await self._transition(channel_id, CIRCUIT_OPEN, CIRCUIT_HALF_OPEN)
                            return CircuitPermit(channel_id=channel_id, probe=True)
                        continue
                    increment_counter("circuit_breaker_rejections_total")
                    raise CircuitOpenError(channel_id, retry_at=row.next_probe_at)
                # Half-open: one probe at a time, but an abandoned probe can be taken over.
                probe_deadline = (
                    row.probe_started_at + timedelta(seconds=self._config.probe_timeout_s)
                    if row.probe_started_at is not None
                    else None
                )
                if probe_deadline is None or now >= probe_deadline:
                    if await self._cas(session, row, now, probe_started_at=now):
                        logger.info("circuit_breaker_probe_taken_over channel=%s", channel_id)
                        return CircuitPermit(channel_id=channel_id, probe=True)
                    continue
                increment_counter("circuit_breaker_rejections_total")
                raise CircuitOpenError(channel_id, retry_at=probe_deadline)
        logger.warning("circuit_breaker_contended channel=%s", channel_id)
        raise CircuitOpenError(channel_id)

    async def record_success(self, permit: CircuitPermit) -> None:
        for _ in range(_MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                now = self._now()
                row = await self._load(session, permit.channel_id, now)
                if row.state == CIRCUIT_HALF_OPEN:
                    if not permit.probe:
                        return
                    if await self._cas(
                        session,
                        row,
                        now,
                        state=CIRCUIT_CLOSED,
                        **_fresh_window(now),
                        opened_at=None,
                        next_probe_at=None,
                        probe_started_at=None,
                        open_count=0,
                    ):
                        await self._transition(permit.channel_id, CIRCUIT_HALF_OPEN, CIRCUIT_CLOSED)
                        return
                    continue
                if row.state == CIRCUIT_OPEN:
                    # A call admitted before the breaker opened; it does not close the circuit.
                    return
                window = self._rolled_window(row, now)
                window = replace(window, successes=window.successes + 1)
                if await self._cas(session, row, now, **window.columns()):
                    return
        logger.warning("circuit_breaker_success_not_recorded channel=%s", permit.channel_id)

    async def record_failure(self, permit: CircuitPermit) -> None:
        for _ in range(_MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                now = self._now()
                row = await self._load(session, permit.channel_id, now)
                if row.state == CIRCUIT_HALF_OPEN:
                    if not permit.probe:
                        return
                    open_count = row.open_count + 1
                    if await self._cas(
                        session,
                        row,
                        now,
                        state=CIRCUIT_OPEN,
                        opened_at=now,
                        next_probe_at=now + self.cooldown_for(open_count),
                        probe_started_at=None,
                        open_count=open_count,
                    ):
                        await self._transition(permit.channel_id, CIRCUIT_HALF_OPEN, CIRCUIT_OPEN)
                        return
                    continue
                if row.state == CIRCUIT_OPEN:
                    return
                window = self._rolled_window(row, now)
                window = replace(window, failures=window.failures + 1)
                failures, successes = window.weighted(now, self._config.window_s)
                ratio = failures / (failures + successes)
                if failures >= self._config.failure_threshold and ratio >= self._config.failure_rate:
                    open_count = row.open_count + 1
                    if await self._cas(
                        session,
                        row,
                        now,
                        state=CIRCUIT_OPEN,
                        **window.columns(),
                        opened_at=now,
                        next_probe_at=now + self.cooldown_for(open_count),
                        probe_started_at=None,
                        open_count=open_count,
                    ):
                        await self._transition(permit.channel_id, CIRCUIT_CLOSED, CIRCUIT_OPEN)
                        return
                    continue
                if await self._cas(session, row, now, **window.columns()):
                    return
        logger.warning("circuit_breaker_failure_not_recorded channel=%s", permit.channel_id)

    async def get_state(self, channel_id: str) -> CircuitState | None:
        async with self._session_factory() as session:
            return await session.get(CircuitState, channel_id)

    async def list_states(self, *, state: str | None = None) -> list[CircuitState]:
        async with self._session_factory() as session:
            query = select(CircuitState).order_by(CircuitState.channel_id.asc())
            if state is not None:
                query = query.where(CircuitState.state == state)
            return list((await session.execute(query)).scalars().all())

    async def reset(self, channel_id: str) -> CircuitState:
        # Operator override: force the breaker closed regardless of the current window.
        for _ in range(_MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                now = self._now()
                row = await self._load(session, channel_id, now)
                previous = row.state
                if await self._cas(
                    session,
                    row,
                    now,
                    state=CIRCUIT_CLOSED,
                    **_fresh_window(now),
                    opened_at=None,
                    next_probe_at=None,
                    probe_started_at=None,
                    open_count=0,
                ):
                    if previous != CIRCUIT_CLOSED:
                        await self._transition(channel_id, previous, CIRCUIT_CLOSED)
                    return await session.get(CircuitState, channel_id, populate_existing=True)
        raise CircuitOpenError(channel_id)


async def count_open_circuits(*, session: AsyncSession) -> int:
    rows = (
        await session.execute(select(CircuitState.channel_id).where(CircuitState.state != CIRCUIT_CLOSED))
    ).scalars().all()
    return len(rows)
