from __future__ import annotations

from typing import Literal


JobStatus = Literal["pending", "in_flight", "succeeded", "failed_retryable", "failed_terminal"]
CircuitStateName = Literal["closed", "open", "half_open"]
AttemptOutcome = Literal["success", "failure", "circuit_open", "render_error", "channel_unavailable"]
DeliveryPath = Literal["queue", "fallback"]
AlertStatus = Literal["raised", "acknowledged", "resolved"]
HealthStatus = Literal["healthy", "degraded", "critical"]

JOB_PENDING = "pending"
JOB_IN_FLIGHT = "in_flight"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED_RETRYABLE = "failed_retryable"
JOB_FAILED_TERMINAL = "failed_terminal"

# Non-terminal jobs hold the (dedupe_key, rule_id) slot.
ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_IN_FLIGHT, JOB_FAILED_RETRYABLE)
TERMINAL_JOB_STATUSES = (JOB_SUCCEEDED, JOB_FAILED_TERMINAL)

TIER_IMMEDIATE = 0
TIER_DELAYED = 1
TIER_DEAD_LETTER = 2

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_CIRCUIT_OPEN = "circuit_open"
OUTCOME_RENDER_ERROR = "render_error"
OUTCOME_CHANNEL_UNAVAILABLE = "channel_unavailable"

PATH_QUEUE = "queue"
PATH_FALLBACK = "fallback"

ALERT_RAISED = "raised"
ALERT_ACKNOWLEDGED = "acknowledged"
ALERT_RESOLVED = "resolved"
OPEN_ALERT_STATUSES = (ALERT_RAISED, ALERT_ACKNOWLEDGED)
