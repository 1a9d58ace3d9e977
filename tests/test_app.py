"""
Smoke tests for FastAPI application startup.

Verifies the app starts without a reachable database, wires the
long-lived services onto app.state and serves the root endpoint.

CHANGELOG:
- 2026-10-11: Scheduler wiring tests
- 2026-10-05: Initial creation
"""

import pytest
from fastapi.testclient import TestClient

from hvac_telemetry.services.ingestion import IngestionService
from hvac_telemetry.services.partitions import PartitionManager


def test_app_starts_and_root_returns_ok(client: TestClient) -> None:
    """App starts without errors and root returns status ok."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_services_wired_onto_app_state(client: TestClient) -> None:
    """Settings and the long-lived services are built at startup."""
    from hvac_telemetry.api.main import app

    assert isinstance(app.state.ingestion, IngestionService)
    assert isinstance(app.state.partitions, PartitionManager)
    assert app.state.settings.max_readings_per_request == 1000
    assert app.state.scheduler is None


def test_invalid_settings_fail_startup(monkeypatch: pytest.MonkeyPatch) -> None:
    """A bad configuration value aborts startup instead of serving requests."""
    from pydantic import ValidationError

    from hvac_telemetry.api.main import app

    monkeypatch.setenv("RAW_RETENTION_DAYS", "0")
    with pytest.raises(ValidationError), TestClient(app):
        pass
