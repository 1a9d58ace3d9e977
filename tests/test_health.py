"""
Unit tests for the health endpoint.

Tests verify:
- GET /health returns HTTP 200 with {"status": "ok"}.
- The in-process scheduler state is reported.

CHANGELOG:
- 2026-10-11: Report scheduler state
- 2026-10-05: Initial creation

TODO:
- None
"""

from unittest.mock import MagicMock

from fastapi.testclient import TestClient


class TestHealth:
    """GET /health."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "scheduler": False}

    def test_health_reports_running_scheduler(self, client: TestClient) -> None:
        from hvac_telemetry.api.main import app

        app.state.scheduler = MagicMock(running=True)
        try:
            response = client.get("/health")
        finally:
            app.state.scheduler = None

        assert response.json()["scheduler"] is True
