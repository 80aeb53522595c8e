from __future__ import annotations

import pytest
from sqlalchemy import select

from chatrelay.domain.models import AuditEvent
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.audit import record_event, scrub_metadata


def test_scrub_metadata_redacts_credentials_and_endpoint_queries() -> None:
    scrubbed = scrub_metadata(
        {
            "channel": {"endpoint": "https://chat.example.test/v1/spaces/AAAA/messages?key=k&token=t", "X-Token": "t"},
            "job_ids": ["job-1", "job-2"],
            "authorization": "Bearer abc",
        }
    )
    assert scrubbed == {
        "channel": {"endpoint": "https://chat.example.test/v1/spaces/AAAA/messages", "X-Token": "[REDACTED]"},
        "job_ids": ["job-1", "job-2"],
        "authorization": "[REDACTED]",
    }


@pytest.mark.asyncio
async def test_record_event_without_session_commits_its_own_row() -> None:
    await record_event(
        tenant_id=None,
        actor_type="admin",
        actor_id="ops-7",
        event_type="delivery.circuit.reset",
        outcome="success",
        resource_type="channel",
        resource_id="ch-1",
        metadata={"webhook_secret": "s"},
    )
    async with SessionLocal() as session:
        rows = (await session.execute(select(AuditEvent))).scalars().all()
    assert [(row.event_type, row.actor_id, row.resource_id) for row in rows] == [
        ("delivery.circuit.reset", "ops-7", "ch-1")
    ]
    assert rows[0].metadata_json == {"webhook_secret": "[REDACTED]"}
