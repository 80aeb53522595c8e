from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chatrelay.persistence.types import JSONPortable, UTCDateTime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Incoming-webhook URL of the chat space; query string carries credentials.
    endpoint_url: Mapped[str] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Tenant fallback target when a rule's own channel is unusable.
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class Rule(Base):
    __tablename__ = "rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    # Serialized predicate AST (or legacy flat filter object); null matches everything.
    filter_predicate: Mapped[dict[str, Any] | None] = mapped_column(JSONPortable(), nullable=True)
    target_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    # Lower values are evaluated (and delivered) first.
    priority: Mapped[int] = mapped_column(Integer, default=100)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class DeliveryJob(Base):
    __tablename__ = "delivery_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    dedupe_key: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    rule_id: Mapped[str] = mapped_column(String)
    channel_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    # Canonical event snapshot; rendering happens at dispatch time from this copy.
    event_json: Mapped[dict[str, Any]] = mapped_column(JSONPortable(), default=dict)
    rendered_payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    # 0 = immediate, 1 = delayed (backoff), 2 = dead-letter.
    tier: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    status: Mapped[str] = mapped_column(String, default="pending")
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    # Visibility-timeout claim; the job reappears in tier 0 once the claim expires.
    claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class DeliveryAttemptLog(Base):
    __tablename__ = "delivery_attempt_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    # Null for fallback deliveries that never had a queued job.
    job_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    attempt_no: Mapped[int] = mapped_column(Integer)
    path: Mapped[str] = mapped_column(String, default="queue")
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    rule_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Endpoint without its query string so webhook credentials never land in logs.
    endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class CircuitState(Base):
    __tablename__ = "circuit_states"

    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    state: Mapped[str] = mapped_column(String, default="closed")
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    # Counts of the bucket before window_started_at, blended in by remaining overlap.
    prev_failure_count: Mapped[int] = mapped_column(Integer, default=0)
    prev_success_count: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_probe_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    probe_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Consecutive opens without a successful probe; drives cooldown extension.
    open_count: Mapped[int] = mapped_column(Integer, default=0)
    # Compare-and-set token; every transition bumps it.
    version: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class HealthSnapshot(Base):
    __tablename__ = "health_snapshots"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    component: Mapped[str] = mapped_column(String)
    score: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String)
    issues: Mapped[list[dict[str, Any]]] = mapped_column(JSONPortable(), default=list)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONPortable(), default=dict)


class HealthAlert(Base):
    __tablename__ = "health_alerts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # One alert per key while its condition persists.
    alert_key: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    component: Mapped[str] = mapped_column(String)
    metric_name: Mapped[str | None] = mapped_column(String, nullable=True)
    current_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String, default="raised")
    occurrences: Mapped[int] = mapped_column(Integer, default=1)
    raised_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # Set when the monitor stops observing the condition; a new breach gets a new alert.
    cleared_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONPortable(), default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


_ACTIVE_JOB_PREDICATE = text("status IN ('pending', 'in_flight', 'failed_retryable')")

# At most one non-terminal job per (dedupe_key, rule_id).
Index(
    "uq_delivery_jobs_active_dedupe",
    DeliveryJob.dedupe_key,
    DeliveryJob.rule_id,
    unique=True,
    postgresql_where=_ACTIVE_JOB_PREDICATE,
    sqlite_where=_ACTIVE_JOB_PREDICATE,
)
Index(
    "ix_delivery_jobs_claimable",
    DeliveryJob.status,
    DeliveryJob.priority,
    DeliveryJob.scheduled_for,
)
Index("ix_delivery_jobs_dedupe_rule", DeliveryJob.dedupe_key, DeliveryJob.rule_id)
Index("ix_delivery_jobs_claim_expires_at", DeliveryJob.status, DeliveryJob.claim_expires_at)
Index("ix_rules_tenant_event_type", Rule.tenant_id, Rule.event_type)
Index("ix_delivery_attempt_logs_created_at", DeliveryAttemptLog.created_at.desc())
Index("ix_health_snapshots_component_timestamp", HealthSnapshot.component, HealthSnapshot.timestamp.desc())
Index("ix_health_alerts_status", HealthAlert.status)
