from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Sequence

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.config import get_settings
from chatrelay.core.errors import EnqueueError
from chatrelay.domain.events import CanonicalEvent
from chatrelay.domain.models import DeliveryAttemptLog, DeliveryJob
from chatrelay.domain.state import (
    ACTIVE_JOB_STATUSES,
    JOB_FAILED_RETRYABLE,
    JOB_IN_FLIGHT,
    JOB_PENDING,
    JOB_SUCCEEDED,
    TIER_DEAD_LETTER,
    TIER_DELAYED,
    TIER_IMMEDIATE,
)
from chatrelay.services.matcher import RuleMatch
from chatrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_delivery_queue_pool = None
_delivery_queue_pool_loop = None
_delivery_queue_lock = asyncio.Lock()
# Candidates fetched per claim round; the compare-and-set update picks the winner.
_CLAIM_CANDIDATES = 5


def _utc_now() -> datetime:
    # Keep queue scheduling in UTC so API and worker processes agree on due times.
    return datetime.now(timezone.utc)


async def get_delivery_queue_pool():
    # Cache the arq Redis pool per event loop to avoid reconnect churn.
    global _delivery_queue_pool, _delivery_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _delivery_queue_pool is not None and _delivery_queue_pool_loop == current_loop:
        return _delivery_queue_pool
    if _delivery_queue_pool is not None and _delivery_queue_pool_loop != current_loop:
        _delivery_queue_pool = None
    async with _delivery_queue_lock:
        if _delivery_queue_pool is None:
            settings = get_settings()
            _delivery_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.delivery_queue_name,
            )
            _delivery_queue_pool_loop = current_loop
    return _delivery_queue_pool


async def publish_delivery_wakeup(job_id: str) -> bool:
    # Nudge arq workers to claim the job now; polling workers pick it up when this fails.
    settings = get_settings()
    if not settings.redis_enabled:
        return False
    try:
        redis = await get_delivery_queue_pool()
        await redis.enqueue_job(
            "deliver_delivery_job",
            job_id,
            _queue_name=settings.delivery_queue_name,
        )
        return True
    except Exception:  # noqa: BLE001 - wake-ups are best-effort; the durable row is already committed.
        logger.warning("delivery_wakeup_publish_failed job_id=%s", job_id, exc_info=True)
        return False


@dataclass
class EnqueueResult:
    job_ids: list[str] = field(default_factory=list)
    duplicate_count: int = 0


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except (SQLAlchemyError, OSError):
        logger.warning("delivery_queue_rollback_failed", exc_info=True)


class DeliveryQueue:
    """Tiered durable queue over the delivery_jobs table.

    Tier 0 holds pending jobs, tier 1 holds backoff-delayed retries, tier 2 is
    the dead-letter tier. Claims are visibility-timeout leases taken with a
    conditional UPDATE, so exclusivity holds across worker processes.
    """

    def __init__(
        self,
        *,
        claim_visibility_s: int | None = None,
        max_attempts: int | None = None,
        dedupe_window_s: int | None = None,
        publisher: Callable[[str], Awaitable[bool]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._visibility = timedelta(
            seconds=max(1, int(claim_visibility_s if claim_visibility_s is not None else settings.claim_visibility_s))
        )
        self._max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.delivery_max_attempts))
        self._dedupe_window = timedelta(
            seconds=max(0, int(dedupe_window_s if dedupe_window_s is not None else settings.dedupe_window_s))
        )
        self._publisher = publisher or publish_delivery_wakeup
        self._clock = clock

    def now(self) -> datetime:
        return self._clock() if self._clock is not None else _utc_now()

    async def _blocking_rule_ids(
        self,
        *,
        session: AsyncSession,
        dedupe_key: str,
        rule_ids: Sequence[str],
        now: datetime,
    ) -> set[str]:
        # Active jobs always block; recently succeeded jobs block inside the dedupe window.
        conditions = [DeliveryJob.status.in_(ACTIVE_JOB_STATUSES)]
        if self._dedupe_window.total_seconds() > 0:
            conditions.append(
                and_(
                    DeliveryJob.status == JOB_SUCCEEDED,
                    DeliveryJob.completed_at >= now - self._dedupe_window,
                )
            )
        rows = (
            await session.execute(
                select(DeliveryJob.rule_id).where(
                    DeliveryJob.dedupe_key == dedupe_key,
                    DeliveryJob.rule_id.in_(list(rule_ids)),
                    or_(*conditions),
                )
            )
        ).scalars().all()
        return {str(row) for row in rows}

    def _build_job(self, *, event: CanonicalEvent, match: RuleMatch, now: datetime, max_attempts: int) -> DeliveryJob:
        return DeliveryJob(
            dedupe_key=event.dedupe_key,
            tenant_id=event.tenant_id,
            rule_id=match.rule.id,
            channel_id=match.channel_id,
            event_type=event.event_type,
            event_json=event.to_json(),
            tier=TIER_IMMEDIATE,
            priority=event.priority,
            attempt_count=0,
            max_attempts=max_attempts,
            status=JOB_PENDING,
            scheduled_for=now,
            created_at=now,
            updated_at=now,
        )

    async def enqueue(
        self,
        *,
        session: AsyncSession,
        event: CanonicalEvent,
        matches: Sequence[RuleMatch],
        max_attempts: int | None = None,
    ) -> EnqueueResult:
        """Persist one job per match; duplicates of active jobs are skipped.

        Raises EnqueueError when the store itself is unavailable.
        """
        result = EnqueueResult()
        if not matches:
            return result
        now = self.now()
        attempts = max(1, int(max_attempts or self._max_attempts))
        try:
            blocked = await self._blocking_rule_ids(
                session=session,
                dedupe_key=event.dedupe_key,
                rule_ids=[match.rule.id for match in matches],
                now=now,
            )
            pending: list[RuleMatch] = []
            seen: set[str] = set()
            for match in matches:
                if match.rule.id in blocked or match.rule.id in seen:
                    result.duplicate_count += 1
                    continue
                seen.add(match.rule.id)
                pending.append(match)
            jobs = [self._build_job(event=event, match=match, now=now, max_attempts=attempts) for match in pending]
            if jobs:
                session.add_all(jobs)
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent ingest won the unique slot for at least one rule; insert one by one.
                    await session.rollback()
                    inserted_ids, raced = await self._insert_individually(
                        session=session, event=event, matches=pending, now=now, max_attempts=attempts
                    )
                    result.duplicate_count += raced
                    result.job_ids = inserted_ids
                else:
                    result.job_ids = [job.id for job in jobs]
        except (SQLAlchemyError, OSError) as exc:
            await _safe_rollback(session)
            increment_counter("delivery_enqueue_failures_total")
            logger.error("delivery_enqueue_failed dedupe_key=%s error=%s", event.dedupe_key, exc)
            raise EnqueueError(str(exc)) from exc

        if result.duplicate_count:
            increment_counter("delivery_jobs_deduplicated_total", result.duplicate_count)
        if result.job_ids:
            increment_counter("delivery_jobs_enqueued_total", len(result.job_ids))
            logger.info(
                "delivery_jobs_enqueued tenant_id=%s event_type=%s jobs=%s duplicates=%s",
                event.tenant_id,
                event.event_type,
                len(result.job_ids),
                result.duplicate_count,
            )
        for job_id in result.job_ids:
            await self._publisher(job_id)
        return result

    async def _insert_individually(
        self,
        *,
        session: AsyncSession,
        event: CanonicalEvent,
        matches: Sequence[RuleMatch],
        now: datetime,
        max_attempts: int,
    ) -> tuple[list[str], int]:
        # Ids are captured right after each commit; a later rollback expires committed rows.
        inserted: list[str] = []
        raced = 0
        for match in matches:
            job = self._build_job(event=event, match=match, now=now, max_attempts=max_attempts)
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raced += 1
                continue
            inserted.append(job.id)
        return inserted, raced

    async def _try_claim(self, *, session: AsyncSession, job_id: str, worker_id: str, now: datetime) -> DeliveryJob | None:
        # Compare-and-set: only one claimant sees rowcount == 1.
        outcome = await session.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id == job_id,
                DeliveryJob.status == JOB_PENDING,
                DeliveryJob.scheduled_for <= now,
            )
            .values(
                status=JOB_IN_FLIGHT,
                tier=TIER_IMMEDIATE,
                claimed_by=worker_id,
                claim_expires_at=now + self._visibility,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            return None
        await session.commit()
        return await session.get(DeliveryJob, job_id, populate_existing=True)

    async def claim_next(self, *, session: AsyncSession, worker_id: str) -> DeliveryJob | None:
        """Lease the next due tier-0 job for ``worker_id``, or return None."""
        now = self.now()
        candidate_ids = (
            await session.execute(
                select(DeliveryJob.id)
                .where(DeliveryJob.status == JOB_PENDING, DeliveryJob.scheduled_for <= now)
                .order_by(
                    DeliveryJob.priority.asc(),
                    DeliveryJob.scheduled_for.asc(),
                    DeliveryJob.created_at.asc(),
                )
                .limit(_CLAIM_CANDIDATES)
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        for job_id in candidate_ids:
            job = await self._try_claim(session=session, job_id=str(job_id), worker_id=worker_id, now=now)
            if job is not None:
                increment_counter("delivery_jobs_claimed_total")
                return job
        await session.rollback()
        return None

    async def claim(self, *, session: AsyncSession, job_id: str, worker_id: str) -> DeliveryJob | None:
        # Claim one specific job, used by arq wake-ups.
        job = await self._try_claim(session=session, job_id=job_id, worker_id=worker_id, now=self.now())
        if job is None:
            await session.rollback()
            return None
        increment_counter("delivery_jobs_claimed_total")
        return job

    async def ack(
        self,
        *,
        session: AsyncSession,
        job_id: str,
        worker_id: str,
        rendered_payload: bytes | None = None,
    ) -> bool:
        # Acknowledge success only while this worker still holds the lease.
        now = self.now()
        outcome = await session.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id == job_id,
                DeliveryJob.status == JOB_IN_FLIGHT,
                DeliveryJob.claimed_by == worker_id,
            )
            .values(
                status=JOB_SUCCEEDED,
                rendered_payload=rendered_payload,
                claimed_by=None,
                claim_expires_at=None,
                last_error=None,
                last_outcome="success",
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if outcome.rowcount != 1:
            logger.warning("delivery_ack_stale_claim job_id=%s worker_id=%s", job_id, worker_id)
            increment_counter("delivery_stale_claims_total")
            return False
        return True

    async def reclaim_expired(self, *, session: AsyncSession, limit: int | None = None) -> int:
        """Return expired in-flight leases to tier 0 exactly once each."""
        now = self.now()
        batch = max(1, int(limit or get_settings().delivery_maintenance_batch_size))
        expired_ids = (
            await session.execute(
                select(DeliveryJob.id)
                .where(DeliveryJob.status == JOB_IN_FLIGHT, DeliveryJob.claim_expires_at <= now)
                .order_by(DeliveryJob.claim_expires_at.asc())
                .limit(batch)
            )
        ).scalars().all()
        if not expired_ids:
            await session.rollback()
            return 0
        outcome = await session.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id.in_([str(job_id) for job_id in expired_ids]),
                DeliveryJob.status == JOB_IN_FLIGHT,
                DeliveryJob.claim_expires_at <= now,
            )
            .values(
                status=JOB_PENDING,
                tier=TIER_IMMEDIATE,
                claimed_by=None,
                claim_expires_at=None,
                scheduled_for=now,
                last_outcome="claim_expired",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        count = int(outcome.rowcount or 0)
        if count:
            increment_counter("delivery_claims_expired_total", count)
            logger.warning("delivery_claims_reclaimed count=%s", count)
        return count

    async def promote_due_retries(self, *, session: AsyncSession, limit: int | None = None) -> int:
        """Move tier-1 jobs whose backoff elapsed back to tier-0 pending."""
        now = self.now()
        batch = max(1, int(limit or get_settings().delivery_maintenance_batch_size))
        due_ids = (
            await session.execute(
                select(DeliveryJob.id)
                .where(DeliveryJob.status == JOB_FAILED_RETRYABLE, DeliveryJob.scheduled_for <= now)
                .order_by(DeliveryJob.scheduled_for.asc())
                .limit(batch)
            )
        ).scalars().all()
        if not due_ids:
            await session.rollback()
            return 0
        promoted_ids = [str(job_id) for job_id in due_ids]
        outcome = await session.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id.in_(promoted_ids),
                DeliveryJob.status == JOB_FAILED_RETRYABLE,
                DeliveryJob.scheduled_for <= now,
            )
            .values(status=JOB_PENDING, tier=TIER_IMMEDIATE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        count = int(outcome.rowcount or 0)
        if count:
            increment_counter("delivery_retries_promoted_total", count)
            for job_id in promoted_ids:
                await self._publisher(job_id)
        return count

    async def stats(self, *, session: AsyncSession) -> dict[str, Any]:
        now = self.now()
        rows = (
            await session.execute(
                select(DeliveryJob.status, DeliveryJob.tier, func.count())
                .group_by(DeliveryJob.status, DeliveryJob.tier)
            )
        ).all()
        by_status: dict[str, int] = {}
        by_tier = {TIER_IMMEDIATE: 0, TIER_DELAYED: 0, TIER_DEAD_LETTER: 0}
        for status, tier, count in rows:
            by_status[str(status)] = by_status.get(str(status), 0) + int(count)
            if status in ACTIVE_JOB_STATUSES or tier == TIER_DEAD_LETTER:
                by_tier[int(tier)] = by_tier.get(int(tier), 0) + int(count)
        oldest_due = await session.scalar(
            select(func.min(DeliveryJob.scheduled_for)).where(
                DeliveryJob.status == JOB_PENDING,
                DeliveryJob.scheduled_for <= now,
            )
        )
        oldest_age_s = None
        if oldest_due is not None:
            if oldest_due.tzinfo is None:
                oldest_due = oldest_due.replace(tzinfo=timezone.utc)
            oldest_age_s = max(0.0, (now - oldest_due).total_seconds())
        backlog = sum(by_status.get(status, 0) for status in ACTIVE_JOB_STATUSES)
        return {
            "by_status": by_status,
            "by_tier": {"immediate": by_tier[TIER_IMMEDIATE], "delayed": by_tier[TIER_DELAYED], "dead_letter": by_tier[TIER_DEAD_LETTER]},
            "backlog": backlog,
            "in_flight": by_status.get(JOB_IN_FLIGHT, 0),
            "oldest_due_age_s": oldest_age_s,
        }


async def get_delivery_job(*, session: AsyncSession, job_id: str, tenant_id: str | None = None) -> DeliveryJob | None:
    row = await session.get(DeliveryJob, job_id)
    if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
        return None
    return row


async def list_delivery_jobs(
    *,
    session: AsyncSession,
    tenant_id: str | None = None,
    status: str | None = None,
    tier: int | None = None,
    limit: int = 100,
) -> list[DeliveryJob]:
    # Dead-letter browsing for operators; newest first.
    query = select(DeliveryJob)
    if tenant_id is not None:
        query = query.where(DeliveryJob.tenant_id == tenant_id)
    if status is not None:
        query = query.where(DeliveryJob.status == status)
    if tier is not None:
        query = query.where(DeliveryJob.tier == tier)
    rows = (
        await session.execute(query.order_by(DeliveryJob.created_at.desc()).limit(max(1, min(limit, 500))))
    ).scalars().all()
    return list(rows)


async def list_job_attempts(*, session: AsyncSession, job_id: str) -> list[DeliveryAttemptLog]:
    rows = (
        await session.execute(
            select(DeliveryAttemptLog)
            .where(DeliveryAttemptLog.job_id == job_id)
            .order_by(DeliveryAttemptLog.attempt_no.asc(), DeliveryAttemptLog.id.asc())
        )
    ).scalars().all()
    return list(rows)
