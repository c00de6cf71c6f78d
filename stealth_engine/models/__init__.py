"""Public models for the collection API."""

from stealth_engine.models.requests import CollectRequest
from stealth_engine.models.responses import ApiResponse

__all__ = [
    "ApiResponse",
    "CollectRequest",
]
