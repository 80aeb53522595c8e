from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.config import get_settings
from chatrelay.core.errors import JobStateError
from chatrelay.domain.models import DeliveryJob
from chatrelay.domain.state import (
    ACTIVE_JOB_STATUSES,
    JOB_FAILED_RETRYABLE,
    JOB_FAILED_TERMINAL,
    JOB_IN_FLIGHT,
    JOB_PENDING,
    TIER_DEAD_LETTER,
    TIER_DELAYED,
    TIER_IMMEDIATE,
)
from chatrelay.services.audit import record_event
from chatrelay.services.delivery.queue import publish_delivery_wakeup
from chatrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Manual recovery only revives jobs that stopped making progress.
RECOVERABLE_STATUSES = (JOB_FAILED_TERMINAL, JOB_FAILED_RETRYABLE)
_MAX_RECOVERY_BATCH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(
    *,
    attempt_count: int,
    base_s: float | None = None,
    max_s: float | None = None,
) -> float:
    # Exponential backoff keyed on the failures seen so far, capped for long outages.
    settings = get_settings()
    base = float(base_s if base_s is not None else settings.delivery_backoff_base_s)
    ceiling = float(max_s if max_s is not None else settings.delivery_backoff_max_s)
    exponent = max(0, int(attempt_count))
    return min(ceiling, base * (2**exponent))


class RetryController:
    """Applies the outcome of a failed attempt to the job that owns it."""

    def __init__(
        self,
        *,
        base_s: float | None = None,
        max_s: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._base_s = base_s
        self._max_s = max_s
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else _utc_now()

    async def record_failure(
        self,
        *,
        session: AsyncSession,
        job: DeliveryJob,
        worker_id: str,
        outcome: str,
        error: str | None,
        retryable: bool = True,
    ) -> str | None:
        """Move a claimed job to tier 1 or the dead-letter tier.

        Returns the new status, or None when the claim was lost meanwhile.
        """
        now = self._now()
        attempt_count = job.attempt_count + 1
        values: dict[str, Any] = {
            "attempt_count": attempt_count,
            "claimed_by": None,
            "claim_expires_at": None,
            "last_error": (error or "")[:2000] or None,
            "last_outcome": outcome,
            "updated_at": now,
        }
        delay_s: float | None = None
        if retryable and attempt_count < job.max_attempts:
            delay_s = retry_delay_seconds(attempt_count=attempt_count, base_s=self._base_s, max_s=self._max_s)
            values.update(
                status=JOB_FAILED_RETRYABLE,
                tier=TIER_DELAYED,
                scheduled_for=now + timedelta(seconds=delay_s),
            )
        else:
            values.update(status=JOB_FAILED_TERMINAL, tier=TIER_DEAD_LETTER, completed_at=now)

        result = await session.execute(
            update(DeliveryJob)
            .where(
                DeliveryJob.id == job.id,
                DeliveryJob.status == JOB_IN_FLIGHT,
                DeliveryJob.claimed_by == worker_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            logger.warning("delivery_failure_stale_claim job_id=%s worker_id=%s", job.id, worker_id)
            increment_counter("delivery_stale_claims_total")
            return None

        if values["status"] == JOB_FAILED_RETRYABLE:
            increment_counter("delivery_retries_scheduled_total")
            logger.info(
                "delivery_job_retry_scheduled job_id=%s attempt=%s delay_s=%s outcome=%s",
                job.id,
                attempt_count,
                delay_s,
                outcome,
            )
        else:
            increment_counter("delivery_jobs_dead_lettered_total")
            logger.warning(
                "delivery_job_dead_lettered job_id=%s attempts=%s outcome=%s error=%s",
                job.id,
                attempt_count,
                outcome,
                values["last_error"],
            )
        return str(values["status"])


@dataclass(frozen=True)
class RecoveryFilter:
    tenant_id: str | None = None
    status: str = JOB_FAILED_TERMINAL
    older_than_hours: float | None = None
    rule_id: str | None = None
    channel_id: str | None = None
    limit: int = 100


@dataclass
class RecoveryResult:
    retried_count: int = 0
    job_ids: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class _Candidate:
    # Plain snapshot; ORM rows are expired by the rollbacks below.
    id: str
    status: str
    dedupe_key: str
    rule_id: str
    tenant_id: str

    @classmethod
    def of(cls, job: DeliveryJob) -> "_Candidate":
        return cls(id=job.id, status=job.status, dedupe_key=job.dedupe_key, rule_id=job.rule_id, tenant_id=job.tenant_id)


async def _has_active_sibling(session: AsyncSession, job: _Candidate) -> bool:
    # A newer job for the same (dedupe_key, rule_id) already owns the slot.
    sibling = await session.scalar(
        select(DeliveryJob.id)
        .where(
            DeliveryJob.dedupe_key == job.dedupe_key,
            DeliveryJob.rule_id == job.rule_id,
            DeliveryJob.id != job.id,
            DeliveryJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .limit(1)
    )
    return sibling is not None


async def _revive(session: AsyncSession, job: _Candidate, now: datetime) -> bool:
    result = await session.execute(
        update(DeliveryJob)
        .where(DeliveryJob.id == job.id, DeliveryJob.status == job.status)
        .values(
            status=JOB_PENDING,
            tier=TIER_IMMEDIATE,
            attempt_count=0,
            scheduled_for=now,
            claimed_by=None,
            claim_expires_at=None,
            completed_at=None,
            last_outcome="manual_retry",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def _select_recoverable(session: AsyncSession, recovery_filter: RecoveryFilter, now: datetime) -> list[_Candidate]:
    if recovery_filter.status not in RECOVERABLE_STATUSES:
        raise JobStateError(
            f"status {recovery_filter.status!r} is not recoverable",
            code="JOB_NOT_RECOVERABLE",
        )
    conditions = [DeliveryJob.status == recovery_filter.status]
    if recovery_filter.tenant_id is not None:
        conditions.append(DeliveryJob.tenant_id == recovery_filter.tenant_id)
    if recovery_filter.rule_id is not None:
        conditions.append(DeliveryJob.rule_id == recovery_filter.rule_id)
    if recovery_filter.channel_id is not None:
        conditions.append(DeliveryJob.channel_id == recovery_filter.channel_id)
    if recovery_filter.older_than_hours is not None:
        conditions.append(DeliveryJob.updated_at <= now - timedelta(hours=float(recovery_filter.older_than_hours)))
    limit = max(1, min(int(recovery_filter.limit), _MAX_RECOVERY_BATCH))
    rows = (
        await session.execute(
            select(DeliveryJob).where(and_(*conditions)).order_by(DeliveryJob.created_at.asc()).limit(limit)
        )
    ).scalars().all()
    return [_Candidate.of(row) for row in rows]


async def retry_jobs(
    *,
    session: AsyncSession,
    job_id: str | None = None,
    recovery_filter: RecoveryFilter | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
    publisher: Callable[[str], Awaitable[bool]] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> RecoveryResult:
    """Reset failed jobs to pending with a fresh attempt budget.

    A single ``job_id`` that cannot be revived raises JobStateError; filter
    selections skip such jobs and report them in ``skipped``.
    """
    if job_id is None and recovery_filter is None:
        raise JobStateError("either job_id or a recovery filter is required", code="RECOVERY_TARGET_REQUIRED")
    now = clock() if clock is not None else _utc_now()
    publish = publisher or publish_delivery_wakeup
    result = RecoveryResult()

    if job_id is not None:
        row = await session.get(DeliveryJob, job_id)
        if row is None:
            raise JobStateError(f"job {job_id} not found", code="JOB_NOT_FOUND")
        if row.status not in RECOVERABLE_STATUSES:
            raise JobStateError(f"job {job_id} is {row.status} and cannot be retried", code="JOB_NOT_RECOVERABLE")
        candidates = [_Candidate.of(row)]
        if await _has_active_sibling(session, candidates[0]):
            raise JobStateError(f"job {job_id} already has an active duplicate", code="ACTIVE_DUPLICATE")
    else:
        candidates = await _select_recoverable(session, recovery_filter, now)

    for job in candidates:
        if await _has_active_sibling(session, job):
            result.skipped.append({"job_id": job.id, "reason": "active_duplicate"})
            continue
        try:
            revived = await _revive(session, job, now)
        except IntegrityError:
            # The unique active slot was taken between the check and the update.
            await session.rollback()
            result.skipped.append({"job_id": job.id, "reason": "active_duplicate"})
            continue
        if not revived:
            result.skipped.append({"job_id": job.id, "reason": "state_changed"})
            continue
        result.job_ids.append(job.id)

    result.retried_count = len(result.job_ids)
    if job_id is not None and not result.job_ids:
        raise JobStateError(f"job {job_id} changed state during recovery", code="JOB_STATE_CONFLICT")

    increment_counter("delivery_manual_retries_total", result.retried_count)
    logger.info(
        "delivery_manual_retry actor=%s retried=%s skipped=%s",
        actor_id,
        result.retried_count,
        len(result.skipped),
    )
    await record_event(
        session=session,
        tenant_id=recovery_filter.tenant_id if recovery_filter is not None else (candidates[0].tenant_id if candidates else None),
        actor_type="admin",
        actor_id=actor_id,
        event_type="delivery.jobs.manual_retry",
        outcome="success",
        resource_type="delivery_job",
        resource_id=job_id,
        request_id=request_id,
        metadata={
            "job_ids": result.job_ids,
            "skipped": result.skipped,
            "filter": None
            if recovery_filter is None
            else {
                "status": recovery_filter.status,
                "rule_id": recovery_filter.rule_id,
                "channel_id": recovery_filter.channel_id,
                "older_than_hours": recovery_filter.older_than_hours,
                "limit": recovery_filter.limit,
            },
        },
        commit=True,
    )
    for revived_id in result.job_ids:
        await publish(revived_id)
    return result
