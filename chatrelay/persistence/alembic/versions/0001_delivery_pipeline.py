"""delivery pipeline

Revision ID: 0001_delivery_pipeline
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_delivery_pipeline"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_JOB_PREDICATE = sa.text("status IN ('pending', 'in_flight', 'failed_retryable')")


def upgrade() -> None:
    op.create_table(
        "channels",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("endpoint_url", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_channels_tenant_id", "channels", ["tenant_id"])

    op.create_table(
        "rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("filter_predicate", postgresql.JSONB(), nullable=True),
        sa.Column("target_channel_id", sa.String(), nullable=True),
        sa.Column("message_template", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rules_tenant_id", "rules", ["tenant_id"])
    # Rule lookup at ingest is always tenant + event type.
    op.create_index("ix_rules_tenant_event_type", "rules", ["tenant_id", "event_type"])

    op.create_table(
        "delivery_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("dedupe_key", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_json", postgresql.JSONB(), nullable=False),
        sa.Column("rendered_payload", sa.LargeBinary(), nullable=True),
        sa.Column("tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_outcome", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_delivery_jobs_tenant_id", "delivery_jobs", ["tenant_id"])
    op.create_index("ix_delivery_jobs_channel_id", "delivery_jobs", ["channel_id"])
    # At most one non-terminal job per (dedupe_key, rule_id).
    op.create_index(
        "uq_delivery_jobs_active_dedupe",
        "delivery_jobs",
        ["dedupe_key", "rule_id"],
        unique=True,
        postgresql_where=_ACTIVE_JOB_PREDICATE,
    )
    # Claim scans walk pending rows in priority then due-time order.
    op.create_index("ix_delivery_jobs_claimable", "delivery_jobs", ["status", "priority", "scheduled_for"])
    op.create_index("ix_delivery_jobs_dedupe_rule", "delivery_jobs", ["dedupe_key", "rule_id"])
    op.create_index("ix_delivery_jobs_claim_expires_at", "delivery_jobs", ["status", "claim_expires_at"])

    op.create_table(
        "delivery_attempt_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("path", sa.String(), nullable=False, server_default="queue"),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("endpoint", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("latency_ms", sa.Float(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_attempt_logs_job_id", "delivery_attempt_logs", ["job_id"])
    op.create_index("ix_delivery_attempt_logs_tenant_id", "delivery_attempt_logs", ["tenant_id"])
    # Health success-ratio windows scan recent attempts.
    op.create_index(
        "ix_delivery_attempt_logs_created_at",
        "delivery_attempt_logs",
        [sa.text("created_at DESC")],
    )

    op.create_table(
        "circuit_states",
        sa.Column("channel_id", sa.String(), primary_key=True),
        sa.Column("state", sa.String(), nullable=False, server_default="closed"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prev_failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prev_success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_probe_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("probe_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("open_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "health_snapshots",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("component", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("issues", postgresql.JSONB(), nullable=False),
        sa.Column("metrics", postgresql.JSONB(), nullable=False),
    )
    op.create_index(
        "ix_health_snapshots_component_timestamp",
        "health_snapshots",
        ["component", sa.text("timestamp DESC")],
    )

    op.create_table(
        "health_alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("alert_key", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("component", sa.String(), nullable=False),
        sa.Column("metric_name", sa.String(), nullable=True),
        sa.Column("current_value", sa.Float(), nullable=True),
        sa.Column("threshold_value", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="raised"),
        sa.Column("occurrences", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("raised_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_health_alerts_alert_key", "health_alerts", ["alert_key"])
    op.create_index("ix_health_alerts_status", "health_alerts", ["status"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("health_alerts")
    op.drop_table("health_snapshots")
    op.drop_table("circuit_states")
    op.drop_table("delivery_attempt_logs")
    op.drop_table("delivery_jobs")
    op.drop_table("rules")
    op.drop_table("channels")
