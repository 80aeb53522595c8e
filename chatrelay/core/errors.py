from __future__ import annotations

from datetime import datetime


class ChatRelayError(Exception):
    """Base error for chatrelay."""


class EventValidationError(ChatRelayError):
    """Inbound event is malformed; rejected before anything is queued."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"missing or invalid field: {field}")


class MatchError(ChatRelayError):
    """Rule evaluation failed; only the offending rule is skipped."""


class PredicateError(MatchError):
    """Filter predicate could not be compiled or evaluated."""


class EnqueueError(ChatRelayError):
    """Durable queue unavailable."""


class DispatchError(ChatRelayError):
    """Chat endpoint rejected the delivery, timed out, or was unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class RenderError(ChatRelayError):
    """Template rendering failed; retrying identical inputs cannot succeed."""


class CircuitOpenError(ChatRelayError):
    """Circuit breaker rejected the call without touching the network."""

    def __init__(self, channel_id: str, *, retry_at: datetime | None = None) -> None:
        self.channel_id = channel_id
        self.retry_at = retry_at
        super().__init__(f"circuit open for channel {channel_id}")


class JobStateError(ChatRelayError):
    """Manual recovery requested for a job that cannot be revived."""

    def __init__(self, message: str, *, code: str = "JOB_STATE_CONFLICT") -> None:
        self.code = code
        super().__init__(message)


class AlertStateError(ChatRelayError):
    """Alert lifecycle transition is not allowed from the current status."""
