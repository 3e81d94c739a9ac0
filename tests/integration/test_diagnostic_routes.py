"""
Tests for the operator diagnostic endpoints.
"""

import httpx
import pytest
from fastapi import FastAPI

from callhub.models.domain.call_domain import UserRole
from callhub.routes import diagnostics


def client_for(harness) -> httpx.AsyncClient:
    app = FastAPI()
    app.include_router(diagnostics.router)
    app.state.runtime = harness.runtime
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_connections_lists_registries_and_live_calls(harness):
    await harness.connect("caller", UserRole.CALLER)
    await harness.connect("recipient", UserRole.RECIPIENT)
    call_id = await harness.active_call("caller", "recipient")
    harness.clock.advance(10)

    async with client_for(harness) as client:
        response = await client.get("/api/diagnostic/connections")

    assert response.status_code == 200
    body = response.json()
    assert body["online_count"] == 2
    assert {(u["user_id"], u["role"]) for u in body["connected_users"]} == {
        ("caller", "caller"),
        ("recipient", "recipient"),
    }
    statuses = {entry["user_id"]: entry for entry in body["user_statuses"]}
    assert statuses["caller"]["status"] == "busy"
    assert statuses["recipient"]["current_call_id"] == call_id

    [live] = body["live_calls"]
    assert live["call_id"] == call_id
    assert live["status"] == "active"
    assert live["current_duration_seconds"] == 10
    await harness.manager.shutdown()


@pytest.mark.asyncio
async def test_user_diagnostic(harness):
    await harness.connect("recipient", UserRole.RECIPIENT)

    async with client_for(harness) as client:
        known = await client.get("/api/diagnostic/user/recipient")
        unknown = await client.get("/api/diagnostic/user/ghost")

    assert known.status_code == 200
    body = known.json()
    assert body["is_connected"] is True
    assert body["role"] == "recipient"
    assert body["status"] == "available"
    assert body["current_call_id"] is None
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_diagnostics_require_admin_key(make_harness):
    harness = make_harness(ADMIN_API_KEY="s3cret")

    async with client_for(harness) as client:
        anonymous = await client.get("/api/diagnostic/connections")
        allowed = await client.get(
            "/api/diagnostic/connections", headers={"X-Admin-Key": "s3cret"}
        )

    assert anonymous.status_code == 401
    assert allowed.status_code == 200
