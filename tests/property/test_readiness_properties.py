"""Property tests for readiness endpoint.

# Feature: stealth-collection-engine, Property 8: Readiness reflects browser and pool state
"""

from __future__ import annotations

from unittest.mock import MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient
from hypothesis import given, settings, strategies as st

from stealth_engine.routers.health import create_health_router


def _make_app(browser_started: bool, proxy_healthy: int) -> FastAPI:
    """Create a minimal FastAPI app with mocked browser and pool stats."""
    browser = MagicMock()
    browser.started = browser_started

    pool = MagicMock()
    pool.get_stats.return_value = {
        "total": max(proxy_healthy, 1),
        "healthy": proxy_healthy,
        "degraded": 0,
        "unhealthy": 0,
        "blocked": 0,
    }

    app = FastAPI()
    app.include_router(create_health_router(pool=pool, browser=browser))
    return app


@settings(max_examples=100)
@given(
    browser_started=st.booleans(),
    proxy_healthy=st.integers(min_value=0, max_value=10),
)
def test_readiness_reflects_pool_state(
    browser_started: bool,
    proxy_healthy: int,
) -> None:
    """Property 8: Readiness reflects browser and pool state.

    For any browser state and healthy proxy count (0..M), the /readiness
    endpoint SHALL return 200 if and only if the browser is started and the
    healthy proxy count is > 0.
    """
    # Feature: stealth-collection-engine, Property 8: Readiness reflects browser and pool state

    app = _make_app(browser_started, proxy_healthy)
    client = TestClient(app)

    response = client.get("/readiness")
    expected_ready = browser_started and proxy_healthy > 0

    if expected_ready:
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["ready"] is True
    else:
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert response.json()["data"]["ready"] is False
    assert response.json()["data"]["proxy_healthy"] == proxy_healthy
