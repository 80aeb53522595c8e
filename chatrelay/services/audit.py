from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.domain.models import AuditEvent
from chatrelay.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Operator actions (manual retry, alert ack/resolve, breaker reset) are audited;
# chat endpoint credentials must never reach the audit table.
_SECRET_FRAGMENTS = ("token", "secret", "password", "authorization", "api_key")
_REDACTED = "[REDACTED]"


def _strip_query(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def scrub_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED
            if any(fragment in str(key).lower() for fragment in _SECRET_FRAGMENTS)
            else scrub_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [scrub_metadata(item) for item in value]
    if isinstance(value, str) and value.startswith(("http://", "https://")):
        return _strip_query(value)
    return value


async def _write(session: AsyncSession, event: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        log = logger.warning if best_effort else logger.error
        log("audit_event_write_failed event_type=%s request_id=%s", event.event_type, event.request_id, exc_info=exc)


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append an audit row for an operator action.

    With a caller session the row joins that transaction and is only committed
    when ``commit`` is set; without one it is written in its own session.
    Write failures are logged, never raised.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=scrub_metadata(metadata or {}),
    )
    if session is not None:
        await _write(session, event, commit=commit, best_effort=best_effort)
        return
    async with SessionLocal() as own_session:
        await _write(own_session, event, commit=True, best_effort=best_effort)
