from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatrelay.core.errors import EventValidationError
from chatrelay.services.normalizer import (
    DEFAULT_PRIORITY,
    HIGH_PRIORITY,
    canonicalize_event_type,
    normalize_event,
)
from chatrelay.tests.utils.seed import won_deal_payload


def test_canonicalize_event_type_aliases() -> None:
    assert canonicalize_event_type("deal.updated") == "deal.updated"
    assert canonicalize_event_type("updated.deal") == "deal.updated"
    assert canonicalize_event_type("Deal.Change") == "deal.updated"
    assert canonicalize_event_type("contact.added") == "person.created"
    assert canonicalize_event_type("company.delete") == "organization.deleted"
    assert canonicalize_event_type("deal.*", allow_wildcard=True) == "deal.*"


def test_canonicalize_event_type_rejects_wildcards_and_garbage() -> None:
    with pytest.raises(EventValidationError):
        canonicalize_event_type("deal.*")
    with pytest.raises(EventValidationError):
        canonicalize_event_type("deal")
    with pytest.raises(EventValidationError):
        canonicalize_event_type("a.b.c")


def test_updated_deal_reaching_won_is_promoted() -> None:
    event = normalize_event(won_deal_payload(event_id="evt-1"), tenant_id="t-1")
    assert event.event_type == "deal.won"
    assert event.entity_type == "deal"
    assert event.entity_id == "42"
    assert event.priority == HIGH_PRIORITY
    assert event.attributes["status"] == "won"
    assert event.previous["status"] == "open"


def test_update_without_status_change_is_not_promoted() -> None:
    payload = won_deal_payload(event_id="evt-2")
    payload["previous"] = {"status": "won"}
    event = normalize_event(payload, tenant_id="t-1")
    assert event.event_type == "deal.updated"
    assert event.priority == DEFAULT_PRIORITY


def test_three_payload_shapes_normalize_to_one_type() -> None:
    flat = normalize_event(
        {"type": "deal.change", "entity_id": 7, "attributes": {"status": "open"}},
        tenant_id="t-1",
    )
    meta = normalize_event(
        {
            "meta": {"action": "change", "entity": "deal", "id": "evt-9", "entity_id": 7, "timestamp": "2024-05-01T10:00:00Z"},
            "data": {"status": "open"},
        },
        tenant_id="t-1",
    )
    legacy = normalize_event(
        {"event": "updated.deal", "current": {"id": 7, "status": "open"}, "meta": {"timestamp": 1714557600000}},
        tenant_id="t-1",
    )
    assert flat.event_type == meta.event_type == legacy.event_type == "deal.updated"
    assert flat.entity_id == meta.entity_id == legacy.entity_id == "7"
    assert meta.source_event_id == "evt-9"
    assert legacy.occurred_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert meta.occurred_at == legacy.occurred_at


def test_dedupe_key_is_stable_per_tenant_and_source_event() -> None:
    payload = won_deal_payload(event_id="evt-dup")
    first = normalize_event(payload, tenant_id="t-1")
    second = normalize_event(dict(payload), tenant_id="t-1")
    other_tenant = normalize_event(dict(payload), tenant_id="t-2")
    assert first.dedupe_key == second.dedupe_key
    assert first.dedupe_key != other_tenant.dedupe_key


def test_missing_fields_name_the_offending_field() -> None:
    with pytest.raises(EventValidationError) as missing_type:
        normalize_event({"entity_id": 1}, tenant_id="t-1")
    assert missing_type.value.field == "type"

    with pytest.raises(EventValidationError) as missing_id:
        normalize_event({"type": "deal.created", "attributes": {"title": "x"}}, tenant_id="t-1")
    assert missing_id.value.field == "entity_id"

    with pytest.raises(EventValidationError) as bad_body:
        normalize_event(["not", "an", "object"], tenant_id="t-1")
    assert bad_body.value.field == "body"

    with pytest.raises(EventValidationError) as bad_time:
        normalize_event({"type": "deal.created", "entity_id": 1, "occurred_at": "yesterday"}, tenant_id="t-1")
    assert bad_time.value.field == "occurred_at"


def test_event_is_immutable_and_round_trips_through_job_json() -> None:
    event = normalize_event(won_deal_payload(event_id="evt-rt"), tenant_id="t-1")
    with pytest.raises(TypeError):
        event.attributes["status"] = "lost"  # type: ignore[index]
    restored = type(event).from_json(event.to_json())
    assert restored == event


@pytest.mark.parametrize("occurred_at", [-1e20, 1e300, float("nan"), float("inf")])
def test_out_of_range_epoch_is_a_field_error(occurred_at: float) -> None:
    with pytest.raises(EventValidationError) as exc:
        normalize_event({"type": "deal.created", "entity_id": 1, "occurred_at": occurred_at}, tenant_id="t-1")
    assert exc.value.field == "occurred_at"
