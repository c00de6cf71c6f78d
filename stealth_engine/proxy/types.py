"""Proxy data models for the identity pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ProxyType(str, Enum):
    """Network class of a proxy identity."""

    RESIDENTIAL = "residential"
    DATACENTER = "datacenter"
    MOBILE = "mobile"


class HealthStatus(str, Enum):
    """Derived health status of a proxy."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    BLOCKED = "blocked"


class RotationReason(str, Enum):
    """Why a session gives up its current proxy."""

    SCHEDULED = "scheduled"
    BLOCKED = "blocked"  # Detection-grade, long block
    FAILED = "failed"  # Transient failure, short block
    ERROR_RECOVERY = "error_recovery"


@dataclass
class ProxyRecord:
    """A single proxy identity with usage tracking.

    Mutated only by :class:`~stealth_engine.proxy.pool.IdentityPool`.
    """

    id: str
    type: ProxyType
    protocol: str  # http, https, socks5
    host: str
    port: int
    username: str | None = None
    password: str | None = None
    country: str = "OTHER"
    city: str | None = None
    isp: str | None = None
    asn: str | None = None
    provider: str = "static"
    sticky_seconds: int | None = None
    added_at: float = 0.0
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_used: float | None = None

    @property
    def server(self) -> str:
        """Proxy server URL without credentials."""
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class ProxyHealth:
    """Health state recomputed on every health-check cycle and failure report."""

    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    success_rate: float = 1.0
    last_check: float = 0.0
    blocked_until: float | None = None
    block_reason: str | None = None
    last_error: str | None = None

    @property
    def blocked(self) -> bool:
        return self.blocked_until is not None


@dataclass(frozen=True)
class AcquireCriteria:
    """Selection filter passed to :meth:`IdentityPool.acquire`."""

    type: ProxyType = ProxyType.RESIDENTIAL
    country: str | None = None
    city: str | None = None
    exclude_blocked: bool = True
    prefer_sticky: bool = False
    exclude_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ProxyConfig:
    """Browser-facing proxy configuration."""

    server: str
    username: str | None = None
    password: str | None = None
    bypass: tuple[str, ...] = ("localhost", "127.0.0.1", "*.local")


@dataclass(frozen=True)
class ProxyLease:
    """A selected proxy plus the configuration a browser session needs."""

    record: ProxyRecord
    config: ProxyConfig
    rotate_after: int
