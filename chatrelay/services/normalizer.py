from __future__ import annotations

from datetime import datetime, timezone
import hashlib
from typing import Any, Mapping

from chatrelay.core.errors import EventValidationError
from chatrelay.domain.events import CanonicalEvent


_ACTION_ALIASES = {
    "added": "created",
    "create": "created",
    "created": "created",
    "new": "created",
    "change": "updated",
    "changed": "updated",
    "update": "updated",
    "updated": "updated",
    "delete": "deleted",
    "deleted": "deleted",
    "merge": "merged",
    "merged": "merged",
}
_ENTITY_ALIASES = {
    "contact": "person",
    "org": "organization",
    "company": "organization",
}
# Status values that promote a generic update into a dedicated event type.
_TERMINAL_STATUS_ACTIONS = {"won": "won", "lost": "lost"}
_HIGH_PRIORITY_ACTIONS = {"won"}
HIGH_PRIORITY = 1
DEFAULT_PRIORITY = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def canonicalize_event_type(value: Any, *, allow_wildcard: bool = False) -> str:
    # Collapse CRM spellings ("updated.deal", "deal.change", "contact.added") into entity.action.
    if not isinstance(value, str) or not value.strip():
        raise EventValidationError("type")
    parts = [part for part in value.strip().lower().split(".") if part]
    if len(parts) != 2:
        raise EventValidationError("type", f"event type must look like entity.action: {value!r}")
    first, second = parts
    if first in _ACTION_ALIASES and second not in _ACTION_ALIASES:
        first, second = second, first
    entity = _ENTITY_ALIASES.get(first, first)
    if second == "*":
        if not allow_wildcard:
            raise EventValidationError("type", "wildcards are only valid in rules")
        return f"{entity}.*"
    action = _ACTION_ALIASES.get(second, second)
    return f"{entity}.{action}"


def _parse_timestamp(value: Any, *, fallback: datetime) -> datetime:
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        # CRM webhooks mix seconds, milliseconds, and microseconds.
        if seconds > 1e14:
            seconds /= 1_000_000
        elif seconds > 1e11:
            seconds /= 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            # NaN, infinities and epochs outside the platform's time_t range.
            raise EventValidationError("occurred_at", f"timestamp out of range: {value!r}") from None
    if isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            raise EventValidationError("occurred_at", f"unparseable timestamp: {value!r}") from None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise EventValidationError("occurred_at", f"unsupported timestamp type: {type(value).__name__}")


def _optional_mapping(value: Any, field: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise EventValidationError(field, f"{field} must be an object")
    return dict(value)


def _extract(raw: Mapping[str, Any]) -> dict[str, Any]:
    # Map the three accepted payload shapes onto one set of raw fields.
    meta = raw.get("meta") if isinstance(raw.get("meta"), Mapping) else {}
    if "type" in raw:
        attributes = _optional_mapping(raw.get("attributes"), "attributes")
        return {
            "type": raw.get("type"),
            "entity_type": raw.get("entity_type"),
            "entity_id": raw.get("entity_id", attributes.get("id")),
            "attributes": attributes,
            "previous": _optional_mapping(raw.get("previous"), "previous"),
            "source_event_id": raw.get("id") or raw.get("event_id"),
            "occurred_at": raw.get("occurred_at"),
        }
    if meta.get("action") and meta.get("entity"):
        attributes = _optional_mapping(raw.get("data"), "data")
        return {
            "type": f"{meta.get('entity')}.{meta.get('action')}",
            "entity_type": None,
            "entity_id": meta.get("entity_id", attributes.get("id")),
            "attributes": attributes,
            "previous": _optional_mapping(raw.get("previous"), "previous"),
            "source_event_id": meta.get("id"),
            "occurred_at": meta.get("timestamp"),
        }
    if "event" in raw:
        current = raw.get("current") if raw.get("current") is not None else raw.get("object")
        attributes = _optional_mapping(current, "current")
        return {
            "type": raw.get("event"),
            "entity_type": None,
            "entity_id": meta.get("id", attributes.get("id")),
            "attributes": attributes,
            "previous": _optional_mapping(raw.get("previous"), "previous"),
            "source_event_id": raw.get("id") or meta.get("request_id") or meta.get("correlation_id"),
            "occurred_at": meta.get("timestamp") or raw.get("occurred_at"),
        }
    raise EventValidationError("type")


def _promote_status(event_type: str, attributes: Mapping[str, Any], previous: Mapping[str, Any]) -> str:
    # Reclassify "updated" events whose status just reached a terminal value.
    entity, _, action = event_type.partition(".")
    if action != "updated":
        return event_type
    status = attributes.get("status")
    if not isinstance(status, str):
        return event_type
    promoted = _TERMINAL_STATUS_ACTIONS.get(status.strip().lower())
    if promoted is None:
        return event_type
    prior = previous.get("status")
    if isinstance(prior, str) and prior.strip().lower() == status.strip().lower():
        return event_type
    return f"{entity}.{promoted}"


def compute_dedupe_key(
    *,
    tenant_id: str,
    event_type: str,
    source_event_id: str | None,
    entity_type: str,
    entity_id: str,
    occurred_at: datetime,
) -> str:
    if source_event_id:
        material = f"{tenant_id}|{source_event_id}|{event_type}"
    else:
        material = f"{tenant_id}|{entity_type}|{entity_id}|{event_type}|{occurred_at.isoformat()}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def normalize_event(
    raw: Any,
    *,
    tenant_id: str,
    received_at: datetime | None = None,
) -> CanonicalEvent:
    """Convert one inbound CRM payload into a CanonicalEvent.

    Raises EventValidationError naming the first missing or malformed field.
    Pure: no I/O, no clock reads beyond ``received_at`` defaulting.
    """
    if not isinstance(raw, Mapping):
        raise EventValidationError("body", "event payload must be a JSON object")
    if not tenant_id or not str(tenant_id).strip():
        raise EventValidationError("tenant_id")
    fields = _extract(raw)
    event_type = canonicalize_event_type(fields["type"])
    entity_type = event_type.split(".", 1)[0]
    declared_entity = fields.get("entity_type")
    if isinstance(declared_entity, str) and declared_entity.strip():
        entity_type = _ENTITY_ALIASES.get(declared_entity.strip().lower(), declared_entity.strip().lower())
    entity_id = fields.get("entity_id")
    if entity_id is None or (isinstance(entity_id, str) and not entity_id.strip()):
        raise EventValidationError("entity_id")
    occurred_at = _parse_timestamp(fields.get("occurred_at"), fallback=received_at or _utc_now())
    attributes = fields["attributes"]
    previous = fields["previous"]
    event_type = _promote_status(event_type, attributes, previous)
    source_event_id = fields.get("source_event_id")
    source_event_id = str(source_event_id) if source_event_id not in (None, "") else None
    tenant = str(tenant_id).strip()
    dedupe_key = compute_dedupe_key(
        tenant_id=tenant,
        event_type=event_type,
        source_event_id=source_event_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        occurred_at=occurred_at,
    )
    action = event_type.split(".", 1)[1]
    return CanonicalEvent(
        tenant_id=tenant,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        attributes=attributes,
        previous=previous,
        occurred_at=occurred_at,
        dedupe_key=dedupe_key,
        source_event_id=source_event_id,
        priority=HIGH_PRIORITY if action in _HIGH_PRIORITY_ACTIONS else DEFAULT_PRIORITY,
    )
