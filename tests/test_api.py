#!/usr/bin/env python3
"""
API tests for the operational surface.

Tests the FastAPI endpoints including:
- Health classification and Prometheus metrics
- Alert listing, alert rules and acknowledgement
- Recovery statistics and recent errors
- Correlation id propagation and error format
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from observability.config import ResilienceConfig
from service import ResilienceRuntime


@pytest.fixture
def runtime(database_url, metrics, metrics_source):
    config = ResilienceConfig(database_url=database_url, monitoring_enabled=False, log_batch_size=1)
    return ResilienceRuntime(config=config, metrics=metrics, metrics_source=metrics_source)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.mark.api
class TestHealthEndpoints:

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["error_rate"] == 0.0
        assert data["window_seconds"] == 300
        assert data["store_available"] is True
        assert data["active_alerts"] == 0
        assert data["active_recoveries"] == 0

    def test_health_when_store_unavailable(self, client, metrics_source):
        metrics_source.fail = True

        data = client.get("/health").json()

        assert data["status"] == "unhealthy"
        assert data["store_available"] is False
        assert data["error_count"] == 0

    def test_prometheus_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "toolserver_active_recoveries" in response.text

    def test_correlation_id_header(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert response.headers["X-Correlation-ID"] == "req-123"

        generated = client.get("/health").headers["X-Correlation-ID"]
        assert generated and generated != "req-123"

    def test_runtime_not_initialized(self):
        # No lifespan run: the app has no runtime bound
        response = TestClient(create_app()).get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "HTTPException"
        assert body["message"] == "Resilience runtime is not initialized"


@pytest.mark.api
class TestAlertEndpoints:

    def trigger_critical_alert(self, runtime, metrics_source):
        metrics_source.values["critical_errors"] = 1
        return asyncio.run(runtime.monitor.evaluate_rules())

    def test_list_active_alerts(self, client, runtime, metrics_source):
        [alert] = self.trigger_critical_alert(runtime, metrics_source)

        data = client.get("/alerts").json()

        assert data["total"] == 1
        assert data["alerts"][0]["id"] == alert.id
        assert data["alerts"][0]["rule_id"] == "critical-errors"
        assert data["alerts"][0]["status"] == "open"
        assert client.get("/alerts", params={"status": "resolved"}).json()["total"] == 0

    def test_invalid_status_filter(self, client):
        assert client.get("/alerts", params={"status": "bogus"}).status_code == 422

    def test_alert_rules_with_state(self, client, runtime, metrics_source):
        self.trigger_critical_alert(runtime, metrics_source)

        rules = {rule["id"]: rule for rule in client.get("/alerts/rules").json()}

        assert rules["critical-errors"]["state"] == "triggered"
        assert rules["high-error-rate"]["state"] == "armed"
        assert rules["database-errors"]["condition"]["filters"] == {"category": "database"}

    def test_acknowledge_alert(self, client, runtime, metrics_source):
        [alert] = self.trigger_critical_alert(runtime, metrics_source)

        response = client.post(f"/alerts/{alert.id}/acknowledge", json={"acknowledged_by": "oncall"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "acknowledged"
        assert data["acknowledged_by"] == "oncall"
        assert data["acknowledged_at"] is not None

    def test_acknowledge_unknown_alert(self, client):
        response = client.post("/alerts/missing/acknowledge", json={"acknowledged_by": "oncall"})

        assert response.status_code == 404
        body = response.json()
        assert body["message"] == "Alert missing is not active"
        assert body["correlation_id"]

    def test_acknowledge_requires_operator(self, client):
        response = client.post("/alerts/anything/acknowledge", json={"acknowledged_by": ""})
        assert response.status_code == 422


@pytest.mark.api
class TestRecoveryEndpoints:

    def test_recovery_stats(self, client, runtime):
        outcome = asyncio.run(runtime.recovery.attempt_recovery(ValueError("validation failed"), {}, "cid-1"))
        assert outcome.success is True

        data = client.get("/recovery/stats", params={"window": "1h"}).json()

        assert data["total"] == 1
        assert data["successful"] == 1
        assert data["success_rate"] == 100
        assert data["by_strategy"] == {"validation_fallback": {"total": 1, "successful": 1, "failed": 0}}
        assert data["window_seconds"] == 3600
        assert data["active_recoveries"] == []

    def test_recovery_stats_default_window(self, client):
        data = client.get("/recovery/stats").json()
        assert data["window_seconds"] == 86400
        assert data["total"] == 0

    def test_invalid_window(self, client):
        response = client.get("/recovery/stats", params={"window": "forever"})

        assert response.status_code == 422
        assert response.json()["message"] == "Invalid time window: forever"

    def test_recent_errors(self, client, runtime):
        runtime.event_logger.info("not persisted")
        runtime.event_logger.error("Database error: timeout", category="database", context={"operation": "select"})

        entries = client.get("/errors/recent", params={"limit": 10}).json()

        assert len(entries) == 1
        assert entries[0]["message"] == "Database error: timeout"
        assert entries[0]["level"] == "error"
        assert entries[0]["category"] == "database"
        assert entries[0]["context"] == {"operation": "select"}

    def test_recent_errors_limit_bounds(self, client):
        assert client.get("/errors/recent", params={"limit": 0}).status_code == 422
        assert client.get("/errors/recent", params={"limit": 501}).status_code == 422
