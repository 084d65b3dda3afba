"""
Tests for health check endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from eventgate.api.main import app
from eventgate.config import settings


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


def test_health_check(client):
    """Test basic health check endpoint."""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "eventgate"
    assert "version" in data


def test_ready_without_pipeline(client):
    response = client.get("/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "not_ready", "reason": "Pipeline not initialized"}


def test_ready_with_memory_pipeline(client, app_pipeline, monkeypatch):
    monkeypatch.setattr(settings, "coordination_backend", "memory")

    response = client.get("/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["datastore"] == "memory"
    assert data["worker"] == "stopped"
    assert data["circuits"] == {"whatsapp_api": "closed"}


def test_root_endpoint(client):
    """Test root endpoint returns API info."""
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "eventgate"
    assert data["endpoints"]["whatsapp_webhook"].startswith("/webhooks/whatsapp")
