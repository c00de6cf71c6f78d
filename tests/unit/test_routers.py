"""Unit tests for the collect and health routers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from stealth_engine.extractors.extractor import ExtractedRecord
from stealth_engine.middleware.error_handler import (
    CircuitOpenError,
    RecoveryExhaustedError,
    register_error_handlers,
)
from stealth_engine.routers.collect import create_collect_router
from stealth_engine.routers.health import create_health_router
from stealth_engine.services.scheduler import PeriodicTask
from stealth_engine.services.session import CollectMetadata, CollectResult


def _result() -> CollectResult:
    record = ExtractedRecord(fields={"price": 120000.0, "revenue": 5000.0}, quality=0.4, x=20, y=100)
    return CollectResult(
        records=(record,),
        metadata=CollectMetadata(
            confidence=0.73,
            pattern_used="Z-pattern",
            elements_processed=1,
            attempts=1,
            session_id="abc",
            proxy_id="us-1",
            duration_ms=812.345,
        ),
    )


def _make_app(orchestrator=None, pool=None, browser=None, scheduled=None) -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(
        create_health_router(orchestrator=orchestrator, pool=pool, browser=browser, scheduled=scheduled)
    )
    if orchestrator is not None:
        app.include_router(create_collect_router(orchestrator=orchestrator))
    return app


@pytest.fixture
def orchestrator() -> MagicMock:
    mock = MagicMock()
    mock.collect = AsyncMock(return_value=_result())
    mock.active_sessions.return_value = []
    mock.get_metrics.return_value = {"orchestrator": {"sessions_started": 3}}
    return mock


@pytest.fixture
def pool() -> MagicMock:
    mock = MagicMock()
    mock.get_stats.return_value = {"total": 3, "healthy": 2, "blocked": 1}
    return mock


# ---------------------------------------------------------------------------
# POST /api/v1/collect
# ---------------------------------------------------------------------------


class TestCollectEndpoint:
    def test_returns_records_and_metadata(self, orchestrator):
        client = TestClient(_make_app(orchestrator=orchestrator))

        resp = client.post("/api/v1/collect", json={"url": "https://market.test/listings"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"][0]["price"] == 120000.0
        assert body["data"][0]["_quality"] == 0.4
        assert body["meta"]["pattern_used"] == "Z-pattern"
        assert body["meta"]["proxy_id"] == "us-1"
        assert body["meta"]["duration_ms"] == 812.35

    def test_options_are_forwarded(self, orchestrator):
        client = TestClient(_make_app(orchestrator=orchestrator))

        client.post(
            "/api/v1/collect",
            json={
                "url": "https://market.test/listings",
                "data_type": "metrics",
                "proxy_type": "datacenter",
                "country": "gb",
                "behavior_profile": "cautious",
                "fallback_urls": ["https://mirror.market.test/listings"],
            },
        )

        url, options = orchestrator.collect.call_args.args
        assert url == "https://market.test/listings"
        assert options.data_type == "metrics"
        assert options.proxy_type == "datacenter"
        assert options.country == "GB"
        assert options.behavior_profile == "cautious"
        assert options.fallback_urls == ("https://mirror.market.test/listings",)

    @pytest.mark.parametrize(
        "payload",
        [
            {"url": "ftp://market.test/file"},
            {"url": ""},
            {"url": "https://market.test", "behavior_profile": "reckless"},
            {"url": "https://market.test", "proxy_type": "satellite"},
            {"url": "https://market.test", "fallback_urls": ["file:///etc/passwd"]},
        ],
    )
    def test_invalid_requests_rejected(self, orchestrator, payload):
        client = TestClient(_make_app(orchestrator=orchestrator))

        resp = client.post("/api/v1/collect", json=payload)

        assert resp.status_code == 422
        assert resp.json()["success"] is False
        orchestrator.collect.assert_not_called()

    def test_circuit_open_maps_to_503(self, orchestrator):
        orchestrator.collect.side_effect = CircuitOpenError(retry_after=30.0)
        client = TestClient(_make_app(orchestrator=orchestrator), raise_server_exceptions=False)

        resp = client.post("/api/v1/collect", json={"url": "https://market.test"})

        assert resp.status_code == 503
        assert resp.json()["meta"] == {"retry_after": 30.0}

    def test_exhausted_recovery_maps_to_502(self, orchestrator):
        orchestrator.collect.side_effect = RecoveryExhaustedError(
            attempted=["delay", "switch_proxy"], error_type="blocked"
        )
        client = TestClient(_make_app(orchestrator=orchestrator), raise_server_exceptions=False)

        resp = client.post("/api/v1/collect", json={"url": "https://market.test"})

        assert resp.status_code == 502
        assert resp.json()["meta"]["attempted"] == ["delay", "switch_proxy"]


# ---------------------------------------------------------------------------
# Health, readiness and metrics
# ---------------------------------------------------------------------------


class TestHealthEndpoints:
    def test_health_reports_pool_and_sessions(self, orchestrator, pool):
        orchestrator.active_sessions.return_value = [{"session_id": "s1"}]
        client = TestClient(_make_app(orchestrator=orchestrator, pool=pool))

        body = client.get("/health").json()

        assert body["success"] is True
        assert body["data"]["status"] == "healthy"
        assert body["data"]["identity_pool"]["healthy"] == 2
        assert body["data"]["active_sessions"] == 1

    def test_ready_with_browser_and_healthy_proxy(self, pool):
        client = TestClient(_make_app(pool=pool, browser=MagicMock(started=True)))

        resp = client.get("/readiness")

        assert resp.status_code == 200
        assert resp.json()["data"] == {"ready": True, "browser_ready": True, "proxy_healthy": 2}

    def test_not_ready_when_browser_stopped(self, pool):
        client = TestClient(_make_app(pool=pool, browser=MagicMock(started=False)))

        resp = client.get("/readiness")

        assert resp.status_code == 503
        assert resp.json()["error"] == "Service not ready"

    def test_not_ready_without_dependencies(self):
        resp = TestClient(_make_app()).get("/readiness")
        assert resp.status_code == 503
        assert resp.json()["data"]["ready"] is False

    def test_metrics_include_scheduler_stats(self, orchestrator):
        async def _noop() -> None:
            return None

        scheduled = [PeriodicTask("pool-health-check", 60, _noop)]
        client = TestClient(_make_app(orchestrator=orchestrator, scheduled=scheduled))

        data = client.get("/metrics").json()["data"]

        assert data["orchestrator"] == {"sessions_started": 3}
        assert data["scheduler"][0]["name"] == "pool-health-check"
        assert data["scheduler"][0]["runs"] == 0
