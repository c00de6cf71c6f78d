"""Pydantic request models for the collection API."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from stealth_engine.proxy.types import ProxyType
from stealth_engine.services.session import CollectOptions


class CollectRequest(BaseModel):
    """Request model for a single synchronous collection."""

    url: str = Field(..., min_length=1)
    data_type: str = "listing"
    page_type: str | None = None
    proxy_type: ProxyType | None = None
    country: str | None = Field(default=None, min_length=2, max_length=5)
    behavior_profile: str | None = Field(
        default=None,
        pattern="^(natural|cautious|ultra_conservative|fast)$",
    )
    fallback_urls: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("url", "fallback_urls")
    @classmethod
    def _require_http(cls, value: str | list[str]) -> str | list[str]:
        for url in [value] if isinstance(value, str) else value:
            if not url.startswith(("http://", "https://")):
                raise ValueError("URL must use http or https")
        return value

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str | None) -> str | None:
        return value.upper() if value else value

    def to_options(self) -> CollectOptions:
        return CollectOptions(
            data_type=self.data_type,
            page_type=self.page_type,
            proxy_type=self.proxy_type.value if self.proxy_type else None,
            country=self.country,
            behavior_profile=self.behavior_profile,
            fallback_urls=tuple(self.fallback_urls),
        )
