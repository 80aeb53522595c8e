from __future__ import annotations

import json
from typing import Any, Protocol

from chatrelay.core.errors import RenderError
from chatrelay.domain.events import CanonicalEvent
from chatrelay.domain.models import Rule


DEFAULT_TEMPLATE = "{entity_type} {entity_id}: {event_type}"


class TemplateRenderer(Protocol):
    # Turns a matched rule and event into the chat request body.
    def render(self, rule: Rule, event: CanonicalEvent) -> bytes: ...


def _template_context(rule: Rule, event: CanonicalEvent) -> dict[str, Any]:
    attributes = dict(event.attributes)
    context: dict[str, Any] = dict(attributes)
    # Event fields win over attribute keys with the same name.
    context.update(
        {
            "tenant_id": event.tenant_id,
            "event_type": event.event_type,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "action": event.action,
            "occurred_at": event.occurred_at.isoformat(),
            "attributes": attributes,
            "previous": dict(event.previous),
            "rule_name": rule.name or rule.id,
        }
    )
    return context


class ChatMessageRenderer:
    """Renders ``{"text": ...}`` chat messages with ``str.format`` templates.

    Templates may reference event fields (``{entity_id}``), top-level
    attributes (``{title}``) or nested values (``{attributes[title]}``,
    ``{previous[status]}``). A reference that cannot be resolved is a
    RenderError, which the worker treats as terminal.
    """

    def __init__(self, *, default_template: str = DEFAULT_TEMPLATE) -> None:
        self._default_template = default_template

    def render(self, rule: Rule, event: CanonicalEvent) -> bytes:
        template = rule.message_template or self._default_template
        try:
            text = template.format_map(_template_context(rule, event))
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            raise RenderError(f"template for rule {rule.id} could not be rendered: {exc!r}") from exc
        if not text.strip():
            raise RenderError(f"template for rule {rule.id} rendered an empty message")
        return json.dumps({"text": text}, ensure_ascii=False).encode("utf-8")
