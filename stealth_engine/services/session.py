"""Session value types shared by the orchestrator, recovery and learning."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from stealth_engine.browser.fingerprint import FingerprintProfile
    from stealth_engine.extractors.extractor import ExtractedRecord
    from stealth_engine.proxy.types import ProxyLease


@dataclass(frozen=True)
class SessionContext:
    """Immutable state of one collection session.

    Built once by the orchestrator; recovery returns updated copies via
    ``dataclasses.replace`` rather than mutating it.
    """

    session_id: str
    target_url: str
    domain: str
    page_type: str = "listing"
    data_type: str = "listing"
    proxy: ProxyLease | None = None
    fingerprint: FingerprintProfile | None = None
    behavior_profile: str = "natural"
    started_at: float = field(default_factory=time.time)
    actions: tuple[str, ...] = ()
    min_delay_ms: int = 0
    timing_variance: float = 0.1
    throttle_factor: float = 1.0
    navigation_timeout_ms: int = 30000
    captcha_token: str | None = None
    selector_overrides: tuple[tuple[str, str], ...] = ()
    parsing_strategy: str | None = None
    fallback_urls: tuple[str, ...] = ()
    restart_required: bool = False

    @property
    def proxy_id(self) -> str | None:
        return self.proxy.record.id if self.proxy else None

    @property
    def proxy_country(self) -> str | None:
        return self.proxy.record.country if self.proxy else None

    def with_action(self, action: str) -> SessionContext:
        return replace(self, actions=(*self.actions, action))

    def selector_for(self, selector: str) -> str:
        """Current replacement for *selector*, or *selector* itself."""
        for old, new in reversed(self.selector_overrides):
            if old == selector:
                return new
        return selector

    def log_extra(self) -> dict:
        return {
            "session_id": self.session_id,
            "target_url": self.target_url,
            "proxy_id": self.proxy_id,
        }


def domain_of(url: str) -> str:
    """Hostname of *url* without a leading ``www.``."""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


@dataclass(frozen=True)
class CollectOptions:
    """Per-call overrides for :meth:`SessionOrchestrator.collect`."""

    data_type: str = "listing"
    page_type: str | None = None
    proxy_type: str | None = None
    country: str | None = None
    behavior_profile: str | None = None
    fallback_urls: tuple[str, ...] = ()
    max_attempts: int | None = None


@dataclass(frozen=True)
class CollectMetadata:
    confidence: float
    pattern_used: str | None
    elements_processed: int
    attempts: int
    session_id: str
    proxy_id: str | None
    duration_ms: float


@dataclass(frozen=True)
class CollectResult:
    records: tuple[ExtractedRecord, ...]
    metadata: CollectMetadata

    def to_dict(self) -> dict:
        return {
            "records": [record.to_dict() for record in self.records],
            "metadata": {
                "confidence": self.metadata.confidence,
                "pattern_used": self.metadata.pattern_used,
                "elements_processed": self.metadata.elements_processed,
                "attempts": self.metadata.attempts,
                "session_id": self.metadata.session_id,
                "proxy_id": self.metadata.proxy_id,
                "duration_ms": round(self.metadata.duration_ms, 2),
            },
        }
