"""Health, readiness, and metrics endpoints.

- GET /health: service status + identity pool stats
- GET /readiness: 200 only when the browser is up and a healthy proxy exists
- GET /metrics: pool, circuit, recovery, learning and extraction counters
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response

from stealth_engine.models.responses import ApiResponse


def create_health_router(
    *,
    orchestrator: Any = None,
    pool: Any = None,
    browser: Any = None,
    scheduled: list[Any] | None = None,
) -> APIRouter:
    """Factory that creates the health router with injected dependencies.

    Parameters
    ----------
    orchestrator:
        SessionOrchestrator whose ``get_metrics`` backs ``/metrics``.
    pool:
        IdentityPool consulted for readiness.
    browser:
        Browser engine; readiness requires ``browser.started`` when present.
    scheduled:
        PeriodicTasks whose stats are included in ``/metrics``.
    """
    health_router = APIRouter(tags=["health"])
    _scheduled = scheduled or []

    @health_router.get("/health")
    async def health() -> dict:
        """Service health check with identity pool statistics."""
        pool_stats = pool.get_stats() if pool else {}
        return ApiResponse(
            success=True,
            data={
                "status": "healthy",
                "identity_pool": pool_stats,
                "active_sessions": len(orchestrator.active_sessions()) if orchestrator else 0,
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness probe, 200 iff the browser is started AND a healthy proxy exists."""
        proxy_healthy = pool.get_stats().get("healthy", 0) if pool else 0
        browser_ready = bool(getattr(browser, "started", True)) if browser else False

        is_ready = browser_ready and proxy_healthy > 0
        if not is_ready:
            response.status_code = 503

        return ApiResponse(
            success=is_ready,
            data={
                "ready": is_ready,
                "browser_ready": browser_ready,
                "proxy_healthy": proxy_healthy,
            },
            error=None if is_ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> dict:
        """Operational metrics endpoint."""
        data = orchestrator.get_metrics() if orchestrator else {}
        data["scheduler"] = [task.get_stats() for task in _scheduled]
        return ApiResponse(success=True, data=data).model_dump()

    return health_router
