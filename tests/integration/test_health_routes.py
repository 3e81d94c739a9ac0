"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from callhub.routes import health

HEALTHY_DB = {"healthy": True, "pool_stats": {"pool_size": 4, "pool_available": 3}}


@pytest.fixture
def app():
    app = FastAPI()
    app.include_router(health.router)
    return app


def test_healthz_endpoint(app):
    """Test the basic health check endpoint."""
    response = TestClient(app).get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "callhub"}


def test_readyz_all_services_healthy(app, harness):
    """Test readiness endpoint when all services are healthy."""
    app.state.runtime = harness.runtime
    with (
        patch.object(health.fast_redis, "ping", AsyncMock(return_value=True)),
        patch("callhub.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = TestClient(app).get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_size"] == 4
    assert checks["calls"] == {
        "ok": True,
        "online_users": 0,
        "live_sessions": 0,
        "billing_timers": 0,
    }


def test_readyz_redis_unhealthy(app, harness):
    """Test readiness endpoint when Redis is down."""
    app.state.runtime = harness.runtime
    with (
        patch.object(health.fast_redis, "ping", AsyncMock(return_value=False)),
        patch("callhub.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        data = TestClient(app).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_database_error(app, harness):
    """Test readiness endpoint when the pool check raises."""
    app.state.runtime = harness.runtime
    with (
        patch.object(health.fast_redis, "ping", AsyncMock(return_value=True)),
        patch(
            "callhub.routes.health.db_health_check",
            AsyncMock(side_effect=RuntimeError("pool closed")),
        ),
    ):
        data = TestClient(app).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert "pool closed" in data["checks"]["database"]["error"]


def test_readyz_without_runtime(app):
    """Readiness fails until the call runtime has started."""
    with (
        patch.object(health.fast_redis, "ping", AsyncMock(return_value=True)),
        patch("callhub.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        data = TestClient(app).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["calls"]["ok"] is False
