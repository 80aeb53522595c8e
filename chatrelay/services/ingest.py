from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.config import get_settings
from chatrelay.core.errors import CircuitOpenError, DispatchError, EnqueueError, RenderError
from chatrelay.domain.events import CanonicalEvent
from chatrelay.domain.models import Channel, DeliveryAttemptLog
from chatrelay.domain.state import (
    OUTCOME_CHANNEL_UNAVAILABLE,
    OUTCOME_CIRCUIT_OPEN,
    OUTCOME_FAILURE,
    OUTCOME_RENDER_ERROR,
    OUTCOME_SUCCESS,
    PATH_FALLBACK,
)
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.delivery.circuit_breaker import ChannelCircuitBreaker, CircuitPermit
from chatrelay.services.delivery.dispatch import ChatDispatcher, redact_endpoint
from chatrelay.services.delivery.queue import DeliveryQueue
from chatrelay.services.delivery.render import ChatMessageRenderer, TemplateRenderer
from chatrelay.services.delivery.worker import counts_against_breaker
from chatrelay.services.matcher import RuleCache, RuleMatch, get_rule_cache
from chatrelay.services.normalizer import normalize_event
from chatrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INGEST_QUEUED = "queued"
INGEST_NO_MATCH = "no_match"
INGEST_FALLBACK = "fallback"


@dataclass
class DirectDeliveryResult:
    rule_id: str
    channel_id: str
    outcome: str
    status_code: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "channel_id": self.channel_id,
            "outcome": self.outcome,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass
class IngestResult:
    status: str
    event: CanonicalEvent
    job_ids: list[str] = field(default_factory=list)
    duplicates: int = 0
    fallback_results: list[DirectDeliveryResult] = field(default_factory=list)


async def _resolve_endpoint(
    match: RuleMatch,
    *,
    tenant_id: str,
    session_factory: async_sessionmaker[AsyncSession],
) -> str | None:
    if match.endpoint_url:
        return match.endpoint_url
    async with session_factory() as session:
        channel = await session.get(Channel, match.channel_id)
    if channel is None or not channel.active or channel.tenant_id != tenant_id:
        return None
    return channel.endpoint_url


async def _write_fallback_logs(
    rows: Sequence[DeliveryAttemptLog],
    *,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    # Fresh session: the request session may be the thing that just failed.
    if not rows:
        return
    try:
        async with session_factory() as session:
            session.add_all(list(rows))
            await session.commit()
    except (SQLAlchemyError, OSError):
        logger.error("fallback_attempt_log_write_failed rows=%s", len(rows), exc_info=True)


async def _deliver_one(
    event: CanonicalEvent,
    match: RuleMatch,
    *,
    dispatcher: ChatDispatcher,
    breaker: ChannelCircuitBreaker,
    renderer: TemplateRenderer,
    session_factory: async_sessionmaker[AsyncSession],
) -> tuple[DirectDeliveryResult, DeliveryAttemptLog]:
    result = DirectDeliveryResult(rule_id=match.rule.id, channel_id=match.channel_id, outcome=OUTCOME_FAILURE)
    endpoint: str | None = None
    latency_ms: float | None = None
    try:
        endpoint = await _resolve_endpoint(match, tenant_id=event.tenant_id, session_factory=session_factory)
        if endpoint is None:
            result.outcome = OUTCOME_CHANNEL_UNAVAILABLE
            result.error = f"channel {match.channel_id} is unavailable"
        else:
            payload = renderer.render(match.rule, event)
            permit: CircuitPermit | None
            try:
                permit = await breaker.before_call(match.channel_id)
            except (SQLAlchemyError, OSError):
                # Breaker state shares the unavailable store; deliver unguarded.
                logger.warning("fallback_breaker_unavailable channel=%s", match.channel_id)
                permit = None
            started = time.monotonic()
            try:
                receipt = await dispatcher.post(endpoint, payload)
            except DispatchError as exc:
                latency_ms = (time.monotonic() - started) * 1000.0
                result.status_code = exc.status_code
                result.error = str(exc)
                if permit is not None:
                    if counts_against_breaker(exc):
                        await breaker.record_failure(permit)
                    else:
                        await breaker.record_success(permit)
            else:
                latency_ms = receipt.latency_ms
                result.outcome = OUTCOME_SUCCESS
                result.status_code = receipt.status_code
                if permit is not None:
                    await breaker.record_success(permit)
    except RenderError as exc:
        result.outcome = OUTCOME_RENDER_ERROR
        result.error = str(exc)
    except CircuitOpenError as exc:
        result.outcome = OUTCOME_CIRCUIT_OPEN
        result.error = str(exc)
    except Exception as exc:  # noqa: BLE001 - fallback is best-effort and must not fail the ingest call.
        logger.exception("fallback_delivery_error rule_id=%s channel=%s", match.rule.id, match.channel_id)
        result.outcome = OUTCOME_FAILURE
        result.error = f"{type(exc).__name__}: {exc}"

    log_row = DeliveryAttemptLog(
        job_id=None,
        attempt_no=1,
        path=PATH_FALLBACK,
        tenant_id=event.tenant_id,
        rule_id=match.rule.id,
        channel_id=match.channel_id,
        dedupe_key=event.dedupe_key,
        endpoint=redact_endpoint(endpoint) if endpoint else None,
        outcome=result.outcome,
        status_code=result.status_code,
        latency_ms=latency_ms,
        error=(result.error or "")[:2000] or None,
        created_at=datetime.now(timezone.utc),
    )
    return result, log_row


async def deliver_direct(
    event: CanonicalEvent,
    matches: Sequence[RuleMatch],
    *,
    dispatcher: ChatDispatcher | None = None,
    breaker: ChannelCircuitBreaker | None = None,
    renderer: TemplateRenderer | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[DirectDeliveryResult]:
    """Deliver matches inline when the durable queue is unavailable.

    No retries and no dead-letter tier; every attempt is logged with
    ``path="fallback"`` and nothing is raised to the caller.
    """
    factory = session_factory or SessionLocal
    dispatcher = dispatcher or ChatDispatcher()
    breaker = breaker or ChannelCircuitBreaker(session_factory=factory)
    renderer = renderer or ChatMessageRenderer()

    results: list[DirectDeliveryResult] = []
    rows: list[DeliveryAttemptLog] = []
    for match in matches:
        result, row = await _deliver_one(
            event,
            match,
            dispatcher=dispatcher,
            breaker=breaker,
            renderer=renderer,
            session_factory=factory,
        )
        results.append(result)
        rows.append(row)
        increment_counter(f"fallback_deliveries_total.{result.outcome}")
        logger.warning(
            "fallback_delivery tenant_id=%s rule_id=%s channel=%s outcome=%s",
            event.tenant_id,
            match.rule.id,
            match.channel_id,
            result.outcome,
        )
    await _write_fallback_logs(rows, session_factory=factory)
    return results


async def ingest_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    raw: Mapping[str, Any],
    queue: DeliveryQueue | None = None,
    dispatcher: ChatDispatcher | None = None,
    breaker: ChannelCircuitBreaker | None = None,
    renderer: TemplateRenderer | None = None,
    rule_cache: RuleCache | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    received_at: datetime | None = None,
) -> IngestResult:
    # Normalize -> match -> enqueue; only EventValidationError reaches the caller.
    event = normalize_event(raw, tenant_id=tenant_id, received_at=received_at)
    increment_counter("events_ingested_total")
    index = await (rule_cache or get_rule_cache()).get_index(session=session, tenant_id=tenant_id)
    matches = index.match(event)
    if not matches:
        increment_counter("events_unmatched_total")
        logger.info("event_no_match tenant_id=%s event_type=%s", tenant_id, event.event_type)
        return IngestResult(status=INGEST_NO_MATCH, event=event)

    try:
        enqueued = await (queue or DeliveryQueue()).enqueue(session=session, event=event, matches=matches)
    except EnqueueError:
        if not get_settings().fallback_enabled:
            raise
        logger.error(
            "delivery_queue_unavailable_using_fallback tenant_id=%s event_type=%s matches=%s",
            tenant_id,
            event.event_type,
            len(matches),
        )
        results = await deliver_direct(
            event,
            matches,
            dispatcher=dispatcher,
            breaker=breaker,
            renderer=renderer,
            session_factory=session_factory,
        )
        return IngestResult(status=INGEST_FALLBACK, event=event, fallback_results=results)

    return IngestResult(
        status=INGEST_QUEUED,
        event=event,
        job_ids=enqueued.job_ids,
        duplicates=enqueued.duplicate_count,
    )
