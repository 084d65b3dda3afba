"""
Tests for FastAPI application lifecycle.
"""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, patch, MagicMock

from eventgate.api.main import app
from eventgate.config import settings
from eventgate.processors import MAINTENANCE_HOOK
from eventgate.repositories import db_manager


@pytest.fixture
def memory_backend(monkeypatch):
    monkeypatch.setattr(settings, "coordination_backend", "memory")


class TestLifespan:
    """Startup wires the pipeline and starts the worker; shutdown stops it."""

    def test_startup_and_shutdown(self, memory_backend):
        with TestClient(app) as client:
            pipeline = app.state.pipeline

            response = client.get("/ready")
            assert response.status_code == 200
            assert response.json()["worker"] == "running"
            assert MAINTENANCE_HOOK in pipeline.registry

        assert pipeline.worker.is_running is False
        assert app.state.worker_task.done()
        assert pipeline.events.subscription_count == 0
        del app.state.pipeline


class TestReadiness:

    def test_ready_with_mongodb(self, app_pipeline, monkeypatch):
        """Readiness pings MongoDB when it is the coordination backend."""
        monkeypatch.setattr(settings, "coordination_backend", "mongodb")
        mock_client = MagicMock()
        mock_client.admin.command = AsyncMock(return_value={"ok": 1})

        with patch.object(type(db_manager), "client", property(lambda self: mock_client)):
            response = TestClient(app).get("/ready")

        assert response.status_code == 200
        assert response.json()["datastore"] == "connected"
        mock_client.admin.command.assert_awaited_once_with("ping")

    def test_not_ready_when_mongodb_unreachable(self, app_pipeline, monkeypatch):
        monkeypatch.setattr(settings, "coordination_backend", "mongodb")
        mock_client = MagicMock()
        mock_client.admin.command = AsyncMock(side_effect=ConnectionError("no primary"))

        with patch.object(type(db_manager), "client", property(lambda self: mock_client)):
            response = TestClient(app).get("/ready")

        assert response.status_code == 503
        assert response.json() == {"status": "not_ready", "reason": "no primary"}
