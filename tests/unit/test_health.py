"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "x-request-id" in response.headers


def test_readyz_endpoint_redis_healthy():
    """Test readiness endpoint when Redis answers."""
    with patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert isinstance(data["checks"]["redis"]["latency_ms"], (int, float))


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=False)):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_missing_jwt_secret():
    """Test readiness endpoint when the JWT secret is missing."""
    with (
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch("app.routes.health.settings.AUTH_JWT_SECRET", ""),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert "AUTH_JWT_SECRET not set" in data["checks"]["configuration"]["issues"]


def test_request_id_is_echoed():
    response = client.get("/healthz", headers={"X-Request-ID": "req-42"})

    assert response.headers["x-request-id"] == "req-42"
