"""Integration test for the /metrics and /health endpoints on the FastAPI app.

Uses a lightweight TestClient against the real app; no database needed
because the lifespan is not entered.
"""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from manual_service.config import APP_VERSION
from manual_service.main import app


@pytest.fixture()
def client():
    return TestClient(app, raise_server_exceptions=False)


class TestMetricsEndpoint:
    def test_returns_200(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "text/plain" in resp.headers["content-type"]

    def test_contains_standard_metrics(self, client):
        # prometheus_client always includes process metrics
        assert "process_cpu_seconds_total" in client.get("/metrics").text

    def test_contains_app_info(self, client):
        assert "manual_service_bundler_info" in client.get("/metrics").text

    def test_contains_pipeline_metrics(self, client):
        body = client.get("/metrics").text
        assert "bundle_generations_total" in body
        assert "transfer_runs_total" in body


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": APP_VERSION}
