"""
End-to-end API flow against the ASGI app with an in-memory engine.

Covers: workflow and rule setup, quote intake, approval responses, error
envelopes, audit trail, notifications and the internal escalation tick.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from factories import DIRECTORY, RecordingGateway
from quote_approvals.config import settings
from quote_approvals.engine import build_engine
from quote_approvals.main import app
from quote_approvals.services.business_hours import BusinessCalendar
from quote_approvals.services.directory import StaticDirectory
from quote_approvals.services.store import InMemoryStore

REP = {"X-Actor-Id": "u-rep", "X-Actor-Role": "sales_rep"}
MANAGER = {"X-Actor-Id": "u-sales-mgr", "X-Actor-Role": "sales_manager"}
ADMIN = {"X-Actor-Id": "u-admin", "X-Actor-Role": "admin"}

WORKFLOW = {
    "name": "Large deals",
    "conditions": [
        {"type": "amount_threshold", "operator": "gt", "value": 5_000_000, "priority": 1},
    ],
    "levels": [
        {
            "name": "Sales Manager",
            "order": 1,
            "approvers": [{"type": "role", "role_id": "sales_manager"}],
            "timeout_hours": 24,
        },
    ],
}

RULE = {
    "name": "Pending quote follow-up",
    "trigger_type": "quote_pending",
    "channels": [{"type": "email"}],
    "reminder_settings": {"intervals": [12], "max_reminders": 1},
    "escalation_chain": [
        {
            "order": 1,
            "name": "Sales Director",
            "trigger_after_hours": 24,
            "escalate_to": [{"type": "role", "role_id": "sales_director"}],
        },
    ],
}


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
async def client(gateway):
    app.state.engine = build_engine(
        store=InMemoryStore(),
        directory=StaticDirectory(DIRECTORY),
        gateway=gateway,
        calendar=BusinessCalendar(),
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _create_quote(client, total_cents=7_500_000):
    response = await client.post(
        "/api/v1/quotes",
        json={"quote_number": "Q-2001", "total_cents": total_cents, "department_id": "sales"},
        headers=REP,
    )
    assert response.status_code == 201
    return response.json()


async def _my_pending(client, headers=MANAGER):
    response = await client.get("/api/v1/approvals", params={"status": "pending"}, headers=headers)
    assert response.status_code == 200
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"]["store"] == "ok"
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_actor_header_required(client):
    response = await client.post("/api/v1/quotes", json={"total_cents": 100})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "ACTOR_REQUIRED"


@pytest.mark.asyncio
async def test_small_quote_is_not_required(client):
    await client.post("/api/v1/workflows", json=WORKFLOW, headers=ADMIN)

    quote = await _create_quote(client, total_cents=300_000)

    assert quote["approval_status"] == "not_required"
    status = (await client.get(f"/api/v1/quotes/{quote['id']}/approval-status")).json()
    assert status["approvals"] == []


@pytest.mark.asyncio
async def test_approve_flow(client):
    created = await client.post("/api/v1/workflows", json=WORKFLOW, headers=ADMIN)
    assert created.status_code == 201
    assert created.json()["conditions"][0]["type"] == "amount_threshold"

    quote = await _create_quote(client)
    assert quote["approval_status"] == "pending"

    pending = await _my_pending(client)
    assert len(pending) == 1
    approval_id = pending[0]["id"]

    response = await client.post(
        f"/api/v1/approvals/{approval_id}/approve", json={"comments": "fine"}, headers=MANAGER
    )
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    status = (await client.get(f"/api/v1/quotes/{quote['id']}/approval-status")).json()
    assert status["status"] == "approved"
    assert status["progress_percentage"] == 100

    logs = (await client.get("/api/v1/audit-logs", params={"quote_id": quote["id"]}, headers=ADMIN)).json()
    assert [e["action"] for e in logs["data"]] == ["requested", "approved"]


@pytest.mark.asyncio
async def test_reject_errors_use_error_envelope(client):
    await client.post("/api/v1/workflows", json=WORKFLOW, headers=ADMIN)
    quote = await _create_quote(client)
    approval_id = (await _my_pending(client))[0]["id"]

    missing = await client.post(f"/api/v1/approvals/{approval_id}/reject", json={}, headers=MANAGER)
    assert missing.status_code == 422
    assert missing.json()["error"]["code"] == "APPROVAL_COMMENTS_REQUIRED"

    wrong = await client.post(
        f"/api/v1/approvals/{approval_id}/reject", json={"comments": "no"}, headers=REP
    )
    assert wrong.status_code == 403

    rejected = await client.post(
        f"/api/v1/approvals/{approval_id}/reject",
        json={"comments": "budget concerns"},
        headers=MANAGER,
    )
    assert rejected.status_code == 200

    again = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={}, headers=MANAGER)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "APPROVAL_INVALID_TRANSITION"

    quote = (await client.get(f"/api/v1/quotes/{quote['id']}")).json()
    assert quote["approval_status"] == "rejected"


@pytest.mark.asyncio
async def test_bound_quote_edit_conflicts(client):
    await client.post("/api/v1/workflows", json=WORKFLOW, headers=ADMIN)
    quote = await _create_quote(client)

    response = await client.put(
        f"/api/v1/quotes/{quote['id']}", json={"total_cents": 9_000_000}, headers=REP
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "QUOTE_CHAIN_BOUND"

    resubmitted = await client.post(
        f"/api/v1/quotes/{quote['id']}/resubmit", json={"total_cents": 9_000_000}, headers=REP
    )
    assert resubmitted.status_code == 200
    assert resubmitted.json()["submission"] == 2


@pytest.mark.asyncio
async def test_escalation_tick_endpoint(client, gateway, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_JOB_SECRET", "tick-secret")
    await client.post("/api/v1/workflows", json=WORKFLOW, headers=ADMIN)
    created = await client.post("/api/v1/notification-rules", json=RULE, headers=ADMIN)
    assert created.status_code == 201
    await _create_quote(client)

    forbidden = await client.post("/internal/jobs/escalation-tick")
    assert forbidden.status_code == 403

    response = await client.post(
        "/internal/jobs/escalation-tick", headers={"X-Internal-Secret": "tick-secret"}
    )
    assert response.status_code == 200
    report = response.json()
    assert report["processed"] == 1
    assert report["errors"] == 0

    notifications = (await client.get("/api/v1/notifications")).json()
    assert [n["event_type"] for n in notifications["data"]] == ["requested"]
    stats = (await client.get("/api/v1/notifications/stats")).json()
    assert stats["total_notifications"] == 1

    log_id = notifications["data"][0]["id"]
    acked = await client.post(f"/api/v1/notifications/{log_id}/acknowledge", headers=MANAGER)
    assert acked.json()["status"] == "acknowledged"


@pytest.mark.asyncio
async def test_unknown_approval_is_404(client):
    response = await client.post("/api/v1/approvals/nope/approve", json={}, headers=MANAGER)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
