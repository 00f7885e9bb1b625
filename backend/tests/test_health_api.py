from fastapi.testclient import TestClient

from enrollment_bridge.core.config import settings
from enrollment_bridge.interfaces.api import health
from main import app
from tests.conftest import UnavailableRedis


def test_ready_when_store_cache_and_worker_are_up(fake_redis, monkeypatch):
    monkeypatch.setattr(health, "get_redis_client", lambda: fake_redis)
    fake_redis.set(settings.worker_heartbeat_key, "now", ex=45)

    with TestClient(app) as client:
        response = client.get("/ready")

    assert response.status_code == 200
    services = response.json()["services"]
    assert services["database"] == "up"
    assert services["worker_alive"] is True
    assert services["moodle_calls_remaining"] == settings.moodle_rate_limit_max_attempts


def test_not_ready_when_redis_is_down(monkeypatch):
    monkeypatch.setattr(health, "get_redis_client", lambda: UnavailableRedis())

    with TestClient(app) as client:
        health_response = client.get("/health")
        ready_response = client.get("/ready")

    assert health_response.status_code == 200
    assert health_response.json()["status"] == "degraded"
    assert health_response.json()["services"]["redis"] == "down"
    assert ready_response.status_code == 503
    assert ready_response.json()["status"] == "not_ready"


def test_metrics_exposes_service_counters():
    with TestClient(app) as client:
        client.get("/webhooks/medusa/health")
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "total_requests" in response.text
    assert "webhooks_received_total" in response.text
