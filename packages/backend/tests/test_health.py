"""Health endpoint tests."""

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Health endpoint should return server status and version."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["server"] == "ok"
    assert "version" in data


@pytest.mark.asyncio
async def test_health_checks_database(client):
    resp = await client.get("/api/v1/health")
    data = resp.json()
    assert data["postgres"] == "ok"
    assert data["status"] == "healthy"
    # Redis is disabled in tests, so it isn't reported
    assert "redis" not in data


@pytest.mark.asyncio
async def test_health_reports_realtime_channels(client):
    resp = await client.get("/api/v1/health")
    assert resp.json()["realtime"] == {
        "channels": 0,
        "authenticated": 0,
        "subscriptions": 0,
    }


@pytest.mark.asyncio
async def test_health_needs_no_token(unauthenticated_client):
    resp = await unauthenticated_client.get("/api/v1/health")
    assert resp.status_code == 200
