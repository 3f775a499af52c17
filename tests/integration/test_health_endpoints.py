"""Integration tests for health and readiness endpoints."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from src.main import app

pytestmark = pytest.mark.integration


def _redis(ping=True, error=None):
    client = MagicMock()
    client.ping = AsyncMock(return_value=ping, side_effect=error)
    return client


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health_endpoint(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert "version" in data
            assert "uptime_seconds" in data

    @pytest.mark.asyncio
    async def test_ready_when_dependencies_up(self):
        with (
            patch("src.api.routes.health.check_db", AsyncMock(return_value=True)),
            patch("src.api.routes.health.get_redis", return_value=_redis()),
        ):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready", "database": True, "redis": True}

    @pytest.mark.asyncio
    async def test_degraded_without_redis(self):
        with (
            patch("src.api.routes.health.check_db", AsyncMock(return_value=True)),
            patch(
                "src.api.routes.health.get_redis",
                return_value=_redis(error=RedisConnectionError("refused")),
            ),
        ):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/ready")
        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["redis"] is False

    @pytest.mark.asyncio
    async def test_degraded_without_database(self):
        with (
            patch("src.api.routes.health.check_db", AsyncMock(return_value=False)),
            patch("src.api.routes.health.get_redis", return_value=_redis()),
        ):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/ready")
        assert response.status_code == 503
        assert response.json()["database"] is False

    @pytest.mark.asyncio
    async def test_request_id_echoed(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
