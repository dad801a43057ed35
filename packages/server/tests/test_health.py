"""
Health check endpoint tests.
"""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Health endpoint should return status ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ready_check(client: AsyncClient):
    """Ready endpoint should report both dependencies up."""
    with patch("app.main.ping_database", AsyncMock(return_value=True)), patch(
        "app.main.ping_redis", AsyncMock(return_value=True)
    ):
        response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"database": True, "redis": True}}


@pytest.mark.asyncio
async def test_ready_degraded(client: AsyncClient):
    """A failed dependency turns readiness into a 503."""
    with patch("app.main.ping_database", AsyncMock(return_value=True)), patch(
        "app.main.ping_redis", AsyncMock(return_value=False)
    ):
        response = await client.get("/ready")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["checks"]["redis"] is False


@pytest.mark.asyncio
async def test_ready_against_test_database(client: AsyncClient):
    """With the SQLite test database and mocked Redis the real probes pass."""
    response = await client.get("/ready")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    response = await client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Request-Id" in response.headers
