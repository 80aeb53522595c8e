from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping


def _freeze(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class CanonicalEvent:
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    attributes: Mapping[str, Any]
    occurred_at: datetime
    dedupe_key: str
    source_event_id: str | None = None
    previous: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 5

    def __post_init__(self) -> None:
        # Read-only views keep the event immutable after normalization.
        object.__setattr__(self, "attributes", _freeze(self.attributes))
        object.__setattr__(self, "previous", _freeze(self.previous))

    @property
    def action(self) -> str:
        return self.event_type.split(".", 1)[1] if "." in self.event_type else self.event_type

    def to_json(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "attributes": dict(self.attributes),
            "previous": dict(self.previous),
            "occurred_at": self.occurred_at.isoformat(),
            "dedupe_key": self.dedupe_key,
            "source_event_id": self.source_event_id,
            "priority": self.priority,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "CanonicalEvent":
        return cls(
            tenant_id=str(payload["tenant_id"]),
            event_type=str(payload["event_type"]),
            entity_type=str(payload["entity_type"]),
            entity_id=str(payload["entity_id"]),
            attributes=payload.get("attributes") or {},
            previous=payload.get("previous") or {},
            occurred_at=datetime.fromisoformat(str(payload["occurred_at"])),
            dedupe_key=str(payload["dedupe_key"]),
            source_event_id=payload.get("source_event_id"),
            priority=int(payload.get("priority", 5)),
        )
