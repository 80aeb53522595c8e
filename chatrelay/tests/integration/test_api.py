from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from chatrelay.apps.api.main import create_app
from chatrelay.core.config import get_settings
from chatrelay.domain.models import DeliveryAttemptLog, DeliveryJob
from chatrelay.domain.state import JOB_FAILED_TERMINAL, JOB_PENDING, TIER_DEAD_LETTER
from chatrelay.persistence.db import SessionLocal
from chatrelay.services.health import run_health_check
from chatrelay.tests.utils.seed import seed_channel, seed_rule, won_deal_payload


TENANT = "t-api"


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _dead_letter_job() -> str:
    job = DeliveryJob(
        dedupe_key=f"{TENANT}:deal:42:deal.won",
        tenant_id=TENANT,
        rule_id="rule-api",
        channel_id="ch-api",
        event_type="deal.won",
        event_json={},
        status=JOB_FAILED_TERMINAL,
        tier=TIER_DEAD_LETTER,
        attempt_count=5,
        max_attempts=5,
        priority=1,
        last_error="chat endpoint returned HTTP 500",
    )
    async with SessionLocal() as session:
        session.add(job)
        await session.commit()
        return job.id


@pytest.mark.asyncio
async def test_submit_event_queues_jobs() -> None:
    channel_id = await seed_channel(tenant_id=TENANT)
    await seed_rule(tenant_id=TENANT, event_type="deal.won", channel_id=channel_id)
    async with _client() as client:
        response = await client.post(
            f"/v1/tenants/{TENANT}/events",
            json=won_deal_payload(event_id="evt-api"),
            headers={"X-Request-Id": "req-ingest-1"},
        )
        duplicate = await client.post(f"/v1/tenants/{TENANT}/events", json=won_deal_payload(event_id="evt-api"))
    assert response.status_code == 202
    body = response.json()
    assert body["meta"]["request_id"] == "req-ingest-1"
    assert body["data"]["status"] == "queued"
    assert body["data"]["event_type"] == "deal.won"
    assert len(body["data"]["job_ids"]) == 1
    assert response.headers["X-Request-Id"] == "req-ingest-1"

    assert duplicate.status_code == 202
    assert duplicate.json()["data"]["job_ids"] == []
    assert duplicate.json()["data"]["duplicates"] == 1


@pytest.mark.asyncio
async def test_malformed_event_returns_field_error() -> None:
    payload = won_deal_payload(event_id="evt-bad")
    payload.pop("type")
    async with _client() as client:
        response = await client.post(f"/v1/tenants/{TENANT}/events", json=payload)
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "EVENT_VALIDATION_ERROR"
    assert error["details"] == {"field": "type"}


@pytest.mark.asyncio
async def test_ingest_token_is_enforced_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("INGEST_TOKEN", "ingest-secret")
    get_settings.cache_clear()
    async with _client() as client:
        denied = await client.post(f"/v1/tenants/{TENANT}/events", json=won_deal_payload())
        allowed = await client.post(
            f"/v1/tenants/{TENANT}/events",
            json=won_deal_payload(),
            headers={"X-Ingest-Token": "ingest-secret"},
        )
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert allowed.status_code == 202
    assert allowed.json()["data"]["status"] == "no_match"


@pytest.mark.asyncio
async def test_manual_recovery_of_dead_lettered_job() -> None:
    job_id = await _dead_letter_job()
    async with _client() as client:
        detail = await client.get(f"/v1/admin/jobs/{job_id}")
        retried = await client.post(
            "/v1/admin/recovery/retry",
            json={"job_id": job_id},
            headers={"X-Actor-Id": "ops-1"},
        )
        again = await client.post("/v1/admin/recovery/retry", json={"job_id": job_id})
        missing = await client.post("/v1/admin/recovery/retry", json={"job_id": "no-such-job"})
        ambiguous = await client.post(
            "/v1/admin/recovery/retry",
            json={"job_id": job_id, "filter": {"tenant_id": TENANT}},
        )
        listed = await client.get("/v1/admin/jobs", params={"tenant_id": TENANT})

    assert detail.status_code == 200
    assert detail.json()["data"]["recoverable"] is True
    assert detail.json()["data"]["attempts"] == []

    assert retried.status_code == 200
    assert retried.json()["data"]["retried_count"] == 1
    assert retried.json()["data"]["job_ids"] == [job_id]

    assert again.status_code == 409
    assert again.json()["error"]["code"] == "JOB_NOT_RECOVERABLE"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"
    assert ambiguous.status_code == 422

    items = listed.json()["data"]["items"]
    assert [(item["id"], item["status"], item["attempt_count"]) for item in items] == [(job_id, JOB_PENDING, 0)]


@pytest.mark.asyncio
async def test_admin_routes_require_token_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "admin-secret")
    get_settings.cache_clear()
    async with _client() as client:
        denied = await client.get("/v1/ops/queue")
        allowed = await client.get("/v1/ops/queue", headers={"X-Admin-Token": "admin-secret"})
    assert denied.status_code == 401
    assert allowed.status_code == 200
    data = allowed.json()["data"]
    assert data["backlog"] == 0
    assert data["workers"] is None


@pytest.mark.asyncio
async def test_health_endpoints_and_alert_acknowledgement() -> None:
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        for index in range(4):
            session.add(
                DeliveryAttemptLog(
                    job_id=f"job-{index}",
                    attempt_no=1,
                    path="queue",
                    tenant_id=TENANT,
                    outcome="failure",
                    status_code=503,
                    created_at=now - timedelta(seconds=30),
                )
            )
        await session.commit()
    async with SessionLocal() as session:
        await run_health_check(session, now=now)

    async with _client() as client:
        liveness = await client.get("/v1/health")
        pipeline = await client.get("/v1/health/pipeline")
        alerts = await client.get("/v1/health/alerts")
        alert_id = next(
            item["id"] for item in alerts.json()["data"]["items"] if item["alert_key"] == "pipeline:HEALTH_CRITICAL"
        )
        acked = await client.post(f"/v1/admin/alerts/{alert_id}/ack", headers={"X-Actor-Id": "oncall"})
        acked_again = await client.post(f"/v1/admin/alerts/{alert_id}/ack")
        unknown = await client.post("/v1/admin/alerts/missing/ack")

    assert liveness.json()["data"] == {"status": "ok"}
    overall = pipeline.json()["data"]["overall"]
    assert (overall["score"], overall["status"]) == (60, "critical")
    assert set(pipeline.json()["data"]["components"]) == {"breakers", "config", "delivery", "queue"}

    assert acked.status_code == 200
    assert acked.json()["data"]["status"] == "acknowledged"
    assert acked.json()["data"]["acknowledged_by"] == "oncall"
    assert acked_again.status_code == 409
    assert acked_again.json()["error"]["code"] == "ALERT_STATE_CONFLICT"
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_non_numeric_value_does_not_block_sibling_rules() -> None:
    channel_id = await seed_channel(tenant_id=TENANT)
    await seed_rule(tenant_id=TENANT, event_type="deal.won", channel_id=channel_id, filter_predicate={"value_min": 1000})
    await seed_rule(tenant_id=TENANT, event_type="deal.won", channel_id=channel_id, rule_id="rule-sibling")
    payload = won_deal_payload(event_id="evt-nan")
    payload["attributes"]["value"] = "NaN"
    async with _client() as client:
        response = await client.post(f"/v1/tenants/{TENANT}/events", json=payload)
    assert response.status_code == 202
    assert response.json()["data"]["status"] == "queued"
    assert len(response.json()["data"]["job_ids"]) == 1


@pytest.mark.asyncio
async def test_out_of_range_occurred_at_is_a_field_error() -> None:
    payload = won_deal_payload(event_id="evt-epoch")
    payload["occurred_at"] = 1e300
    async with _client() as client:
        response = await client.post(f"/v1/tenants/{TENANT}/events", json=payload)
    assert response.status_code == 400
    assert response.json()["error"]["details"] == {"field": "occurred_at"}
