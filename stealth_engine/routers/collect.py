"""Collection endpoint.

- POST /api/v1/collect: run one collection session and return its records
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from stealth_engine.models.requests import CollectRequest
from stealth_engine.models.responses import ApiResponse

logger = logging.getLogger(__name__)


def create_collect_router(*, orchestrator: Any) -> APIRouter:
    """Factory that creates the collect router around a SessionOrchestrator.

    Collector errors raised by the orchestrator propagate to the exception
    handlers, which render them in the response envelope.
    """
    collect_router = APIRouter(prefix="/api/v1", tags=["collect"])

    @collect_router.post("/collect")
    async def collect(body: CollectRequest) -> dict:
        """Collect records from ``body.url``. Blocks until the session ends."""
        result = await orchestrator.collect(body.url, body.to_options())
        payload = result.to_dict()
        return ApiResponse(
            success=True,
            data=payload["records"],
            meta=payload["metadata"],
        ).model_dump()

    return collect_router
