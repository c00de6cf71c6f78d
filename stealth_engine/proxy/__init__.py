"""Identity pool package: proxy records, health, selection and rotation."""

from stealth_engine.proxy.pool import IdentityPool
from stealth_engine.proxy.types import (
    AcquireCriteria,
    HealthStatus,
    ProxyConfig,
    ProxyHealth,
    ProxyLease,
    ProxyRecord,
    ProxyType,
    RotationReason,
)

__all__ = [
    "AcquireCriteria",
    "HealthStatus",
    "IdentityPool",
    "ProxyConfig",
    "ProxyHealth",
    "ProxyLease",
    "ProxyRecord",
    "ProxyType",
    "RotationReason",
]
