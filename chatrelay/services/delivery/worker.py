from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.config import get_settings
from chatrelay.core.errors import CircuitOpenError, DispatchError, RenderError
from chatrelay.domain.events import CanonicalEvent
from chatrelay.domain.models import Channel, DeliveryAttemptLog, DeliveryJob, Rule
from chatrelay.domain.state import (
    OUTCOME_CHANNEL_UNAVAILABLE,
    OUTCOME_CIRCUIT_OPEN,
    OUTCOME_FAILURE,
    OUTCOME_RENDER_ERROR,
    OUTCOME_SUCCESS,
    PATH_QUEUE,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.coordination import publish_worker_heartbeat, remove_worker_heartbeat
from chatrelay.services.delivery.circuit_breaker import ChannelCircuitBreaker, CircuitPermit
from chatrelay.services.delivery.dispatch import ChatDispatcher, redact_endpoint
from chatrelay.services.delivery.queue import DeliveryQueue
from chatrelay.services.delivery.render import ChatMessageRenderer, TemplateRenderer
from chatrelay.services.delivery.retry import RetryController
from chatrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    # Let workers start before migrations by treating missing tables as a temporary degraded state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


def counts_against_breaker(exc: DispatchError) -> bool:
    # Transport errors, throttling and 5xx mean the endpoint is unhealthy; other 4xx mean it answered.
    if exc.status_code is None:
        return True
    return exc.status_code >= 500 or exc.status_code == 429


@dataclass(frozen=True)
class _JobSnapshot:
    # Plain copy of the claimed row so later commits cannot expire what we read.
    id: str
    tenant_id: str
    rule_id: str
    channel_id: str
    dedupe_key: str
    attempt_no: int
    event_json: dict[str, Any]

    @classmethod
    def of(cls, job: DeliveryJob) -> "_JobSnapshot":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            rule_id=job.rule_id,
            channel_id=job.channel_id,
            dedupe_key=job.dedupe_key,
            attempt_no=job.attempt_count + 1,
            event_json=dict(job.event_json or {}),
        )


class DeliveryWorker:
    """Claims delivery jobs and carries each one through a single attempt."""

    def __init__(
        self,
        *,
        worker_id: str | None = None,
        queue: DeliveryQueue | None = None,
        breaker: ChannelCircuitBreaker | None = None,
        dispatcher: ChatDispatcher | None = None,
        renderer: TemplateRenderer | None = None,
        retry: RetryController | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self._session_factory = session_factory or SessionLocal
        self._queue = queue or DeliveryQueue()
        self._breaker = breaker or ChannelCircuitBreaker(session_factory=self._session_factory)
        self._dispatcher = dispatcher or ChatDispatcher()
        self._renderer = renderer or ChatMessageRenderer()
        self._retry = retry or RetryController()

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def breaker(self) -> ChannelCircuitBreaker:
        return self._breaker

    def _attempt_log(
        self,
        job: _JobSnapshot,
        *,
        outcome: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        latency_ms: float | None = None,
        error: str | None = None,
    ) -> DeliveryAttemptLog:
        return DeliveryAttemptLog(
            job_id=job.id,
            attempt_no=job.attempt_no,
            path=PATH_QUEUE,
            tenant_id=job.tenant_id,
            rule_id=job.rule_id,
            channel_id=job.channel_id,
            dedupe_key=job.dedupe_key,
            endpoint=redact_endpoint(endpoint) if endpoint else None,
            outcome=outcome,
            status_code=status_code,
            latency_ms=latency_ms,
            error=(error or "")[:2000] or None,
            created_at=_utc_now(),
        )

    async def _fail(
        self,
        session: AsyncSession,
        job: DeliveryJob,
        snapshot: _JobSnapshot,
        *,
        outcome: str,
        error: str,
        retryable: bool,
        endpoint: str | None = None,
        status_code: int | None = None,
        latency_ms: float | None = None,
    ) -> str:
        # Attempt log and job transition commit together.
        session.add(
            self._attempt_log(
                snapshot,
                outcome=outcome,
                endpoint=endpoint,
                status_code=status_code,
                latency_ms=latency_ms,
                error=error,
            )
        )
        await self._retry.record_failure(
            session=session,
            job=job,
            worker_id=self.worker_id,
            outcome=outcome,
            error=error,
            retryable=retryable,
        )
        increment_counter(f"delivery_attempts_total.{outcome}")
        return outcome

    async def process_job(self, *, session: AsyncSession, job: DeliveryJob) -> str:
        """Run one delivery attempt for a job this worker has claimed; returns the outcome."""
        snapshot = _JobSnapshot.of(job)
        channel = await session.get(Channel, snapshot.channel_id)
        if channel is None or not channel.active or channel.tenant_id != snapshot.tenant_id:
            return await self._fail(
                session,
                job,
                snapshot,
                outcome=OUTCOME_CHANNEL_UNAVAILABLE,
                error=f"channel {snapshot.channel_id} is missing, inactive or owned by another tenant",
                retryable=False,
            )
        endpoint = channel.endpoint_url

        rule = await session.get(Rule, snapshot.rule_id)
        try:
            if rule is None:
                raise RenderError(f"rule {snapshot.rule_id} no longer exists")
            event = CanonicalEvent.from_json(snapshot.event_json)
            payload = self._renderer.render(rule, event)
        except (RenderError, KeyError, ValueError) as exc:
            return await self._fail(
                session,
                job,
                snapshot,
                outcome=OUTCOME_RENDER_ERROR,
                error=str(exc),
                retryable=False,
                endpoint=endpoint,
            )

        try:
            permit = await self._breaker.before_call(snapshot.channel_id)
        except CircuitOpenError as exc:
            return await self._fail(
                session,
                job,
                snapshot,
                outcome=OUTCOME_CIRCUIT_OPEN,
                error=str(exc),
                retryable=True,
                endpoint=endpoint,
            )

        return await self._dispatch(session, job, snapshot, permit=permit, endpoint=endpoint, payload=payload)

    async def _dispatch(
        self,
        session: AsyncSession,
        job: DeliveryJob,
        snapshot: _JobSnapshot,
        *,
        permit: CircuitPermit,
        endpoint: str,
        payload: bytes,
    ) -> str:
        started = time.monotonic()
        try:
            receipt = await self._dispatcher.post(endpoint, payload)
        except DispatchError as exc:
            latency_ms = (time.monotonic() - started) * 1000.0
            if counts_against_breaker(exc):
                await self._breaker.record_failure(permit)
            else:
                await self._breaker.record_success(permit)
            return await self._fail(
                session,
                job,
                snapshot,
                outcome=OUTCOME_FAILURE,
                error=str(exc),
                retryable=exc.retryable,
                endpoint=endpoint,
                status_code=exc.status_code,
                latency_ms=latency_ms,
            )

        await self._breaker.record_success(permit)
        session.add(
            self._attempt_log(
                snapshot,
                outcome=OUTCOME_SUCCESS,
                endpoint=endpoint,
                status_code=receipt.status_code,
                latency_ms=receipt.latency_ms,
            )
        )
        await self._queue.ack(
            session=session,
            job_id=snapshot.id,
            worker_id=self.worker_id,
            rendered_payload=payload,
        )
        increment_counter(f"delivery_attempts_total.{OUTCOME_SUCCESS}")
        logger.info(
            "delivery_job_delivered job_id=%s channel=%s attempt=%s latency_ms=%.1f",
            snapshot.id,
            snapshot.channel_id,
            snapshot.attempt_no,
            receipt.latency_ms,
        )
        return OUTCOME_SUCCESS

    async def run_once(self) -> bool:
        # Claim and process at most one job; False means the queue had nothing due.
        async with self._session_factory() as session:
            job = await self._queue.claim_next(session=session, worker_id=self.worker_id)
            if job is None:
                return False
            await self.process_job(session=session, job=job)
            return True

    async def deliver(self, job_id: str) -> str:
        # Wake-up path: claim one specific job if it is still pending and due.
        async with self._session_factory() as session:
            job = await self._queue.claim(session=session, job_id=job_id, worker_id=self.worker_id)
            if job is None:
                return "skipped"
            return await self.process_job(session=session, job=job)


async def run_worker_iteration(worker_id: str, *, worker: DeliveryWorker | None = None) -> bool:
    """One claim-and-deliver pass; True when a job was processed."""
    worker = worker or DeliveryWorker(worker_id=worker_id)
    return await worker.run_once()


async def run_maintenance_cycle(
    *,
    queue: DeliveryQueue | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Reclaim expired leases and promote due retries; safe to run from many processes."""
    queue = queue or DeliveryQueue()
    factory = session_factory or SessionLocal
    try:
        async with factory() as session:
            reclaimed = await queue.reclaim_expired(session=session, limit=limit)
            promoted = await queue.promote_due_retries(session=session, limit=limit)
            stats = await queue.stats(session=session)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "reclaimed": 0, "promoted": 0}
        raise
    set_gauge("delivery_backlog", stats["backlog"])
    set_gauge("delivery_dead_letter", stats["by_tier"]["dead_letter"])
    if stats["oldest_due_age_s"] is not None:
        set_gauge("delivery_oldest_due_age_s", stats["oldest_due_age_s"])
    return {"status": "ok", "reclaimed": reclaimed, "promoted": promoted}


class DeliveryWorkerPool:
    """N concurrent delivery loops plus the maintenance and heartbeat loops."""

    def __init__(
        self,
        *,
        concurrency: int | None = None,
        pool_id: str | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        queue: DeliveryQueue | None = None,
        breaker: ChannelCircuitBreaker | None = None,
        dispatcher: ChatDispatcher | None = None,
        renderer: TemplateRenderer | None = None,
        poll_interval_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self.pool_id = pool_id or f"pool-{uuid4().hex[:8]}"
        self._session_factory = session_factory or SessionLocal
        self._queue = queue or DeliveryQueue()
        self._breaker = breaker or ChannelCircuitBreaker(session_factory=self._session_factory)
        self._dispatcher = dispatcher or ChatDispatcher()
        self._renderer = renderer or ChatMessageRenderer()
        size = max(1, int(concurrency if concurrency is not None else settings.delivery_worker_concurrency))
        self.workers = [
            DeliveryWorker(
                worker_id=f"{self.pool_id}-{index}",
                queue=self._queue,
                breaker=self._breaker,
                dispatcher=self._dispatcher,
                renderer=self._renderer,
                session_factory=self._session_factory,
            )
            for index in range(size)
        ]
        self._poll_interval_s = float(
            poll_interval_s if poll_interval_s is not None else settings.delivery_poll_interval_s
        )
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def _sleep(self, seconds: float) -> None:
        # Sleep that ends early when the pool is stopping.
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(0.01, seconds))
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, worker: DeliveryWorker) -> None:
        while not self._stopping.is_set():
            try:
                claimed = await worker.run_once()
            except Exception:  # noqa: BLE001 - keep the slot alive; the claim expires and is reclaimed.
                logger.exception("delivery worker iteration failed worker_id=%s", worker.worker_id)
                claimed = False
            if not claimed:
                await self._sleep(self._poll_interval_s)

    async def _maintenance_loop(self) -> None:
        interval_s = max(1, int(get_settings().delivery_maintenance_interval_s))
        while not self._stopping.is_set():
            try:
                await run_maintenance_cycle(queue=self._queue, session_factory=self._session_factory)
            except Exception:  # noqa: BLE001 - keep maintenance alive while surfacing failures in worker logs.
                logger.exception("delivery maintenance cycle failed")
            await self._sleep(interval_s)

    async def _heartbeat_loop(self) -> None:
        interval_s = max(1, int(get_settings().worker_heartbeat_interval_s))
        while not self._stopping.is_set():
            for worker in self.workers:
                await publish_worker_heartbeat(worker.worker_id)
            await self._sleep(interval_s)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._worker_loop(worker)) for worker in self.workers]
        self._tasks.append(asyncio.create_task(self._maintenance_loop()))
        self._tasks.append(asyncio.create_task(self._heartbeat_loop()))
        logger.info("delivery_worker_pool_started pool_id=%s concurrency=%s", self.pool_id, len(self.workers))

    async def stop(self) -> None:
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for worker in self.workers:
            await remove_worker_heartbeat(worker.worker_id)
        logger.info("delivery_worker_pool_stopped pool_id=%s", self.pool_id)

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()
