"""Identity pool with least-used selection, blocking, and health checks.

Proxies are grouped by type and country. Selection filters candidates by
type/geo/health/block state, orders them by usage ratio (requests per second
of pool membership), and picks randomly among the top-K least used so the
collector itself does not produce a deterministic rotation signature.
Counters are mutated under an ``asyncio.Lock`` so concurrent sessions never
double-count a proxy's budget.

A blocked record carries ``blocked_until``; it is filtered out of every
selection until that instant has passed. The health-check cycle clears
expired blocks and re-measures stale proxies against control endpoints.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Iterable

import httpx

from stealth_engine.middleware.error_handler import PoolExhaustedError
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

logger = logging.getLogger(__name__)


class IdentityPool:
    """Owns proxy records and their health, exposes selection and rotation."""

    def __init__(
        self,
        *,
        top_k: int = 5,
        rotate_after: int = 50,
        block_seconds_blocked: int = 3600,
        block_seconds_failed: int = 300,
        auto_block_seconds: int = 1800,
        success_rate_floor: float = 0.5,
        min_samples: int = 5,
        health_staleness_seconds: int = 300,
        health_check_batch_size: int = 10,
        control_endpoints: list[str] | None = None,
        degraded_latency_ms: float = 5000.0,
        geo_distribution: dict[str, float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._top_k = top_k
        self._rotate_after = rotate_after
        self._block_seconds = {
            RotationReason.BLOCKED: block_seconds_blocked,
            RotationReason.FAILED: block_seconds_failed,
        }
        self._auto_block_seconds = auto_block_seconds
        self._success_rate_floor = success_rate_floor
        self._min_samples = min_samples
        self._health_staleness_seconds = health_staleness_seconds
        self._batch_size = health_check_batch_size
        self._control_endpoints = control_endpoints or ["https://httpbin.org/status/200"]
        self._degraded_latency_ms = degraded_latency_ms
        self._geo_distribution = geo_distribution or {}
        self._rng = rng or random.Random()

        self._pools: dict[ProxyType, dict[str, list[ProxyRecord]]] = {
            proxy_type: {} for proxy_type in ProxyType
        }
        self._records: dict[str, ProxyRecord] = {}
        self._health: dict[str, ProxyHealth] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, records: Iterable[ProxyRecord]) -> None:
        """Add *records* to the pool, grouped by type and country."""
        now = time.time()
        added = 0
        for record in records:
            if record.id in self._records:
                logger.warning("Duplicate proxy id %s ignored", record.id)
                continue
            if not record.added_at:
                record.added_at = now
            self._pools[record.type].setdefault(record.country, []).append(record)
            self._records[record.id] = record
            self._health[record.id] = ProxyHealth(last_check=now)
            added += 1

        logger.info("Identity pool loaded %d proxies (total %d)", added, len(self._records))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def acquire(self, criteria: AcquireCriteria | None = None) -> ProxyLease:
        """Select a proxy matching *criteria* and count the acquisition.

        Falls back to any country holding proxies of the requested type when
        the requested (or geo-weighted) country has none. Raises
        ``PoolExhaustedError`` when no candidate survives the filters.
        """
        criteria = criteria or AcquireCriteria()

        async with self._lock:
            candidates = self._candidates(criteria)
            selected = self._select_least_used(candidates)
            selected.request_count += 1
            selected.last_used = time.time()

        return ProxyLease(
            record=selected,
            config=self.export_proxy_config(selected),
            rotate_after=self._rotate_after,
        )

    async def rotate(
        self,
        current: ProxyRecord,
        reason: RotationReason = RotationReason.SCHEDULED,
    ) -> ProxyLease:
        """Give up *current* and acquire a replacement with the same type and country.

        ``blocked`` and ``failed`` reasons block *current* first, for an hour
        and five minutes respectively by default.
        """
        if reason in self._block_seconds:
            await self.block(current.id, self._block_seconds[reason], reason=reason.value)

        return await self.acquire(
            AcquireCriteria(
                type=current.type,
                country=current.country,
                exclude_blocked=True,
                exclude_ids=frozenset({current.id}),
            )
        )

    def _candidates(self, criteria: AcquireCriteria) -> list[ProxyRecord]:
        pool = self._pools[criteria.type]
        if not any(pool.values()):
            raise PoolExhaustedError(
                f"No {criteria.type.value} proxies available",
                proxy_type=criteria.type.value,
            )

        country = criteria.country or self._weighted_country()
        candidates = self._filter(pool.get(country, []), criteria)

        if not candidates and criteria.city is None:
            # Fall back to any country for the requested type
            fallback = [
                record
                for records in pool.values()
                for record in records
                if record.country != country
            ]
            candidates = self._filter(fallback, criteria)
            if candidates:
                logger.info(
                    "No %s proxies usable in %s, falling back to any country",
                    criteria.type.value,
                    country,
                )

        if not candidates:
            raise PoolExhaustedError(
                f"No suitable {criteria.type.value} proxies available for {country}",
                proxy_type=criteria.type.value,
                country=country,
            )
        return candidates

    def _filter(self, records: list[ProxyRecord], criteria: AcquireCriteria) -> list[ProxyRecord]:
        now = time.time()
        result = [r for r in records if r.id not in criteria.exclude_ids]

        if criteria.city:
            result = [r for r in result if r.city == criteria.city]

        if criteria.exclude_blocked:
            result = [r for r in result if self._is_selectable(r.id, now)]
        else:
            # Expired-or-not, an active block always excludes the record
            result = [r for r in result if not self._is_blocked(r.id, now)]

        if criteria.prefer_sticky:
            sticky = [r for r in result if r.sticky_seconds]
            if sticky:
                result = sticky

        return result

    def _is_blocked(self, proxy_id: str, now: float) -> bool:
        health = self._health[proxy_id]
        return health.blocked_until is not None and health.blocked_until > now

    def _is_selectable(self, proxy_id: str, now: float) -> bool:
        health = self._health[proxy_id]
        if self._is_blocked(proxy_id, now):
            return False
        return health.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.BLOCKED)

    def _select_least_used(self, candidates: list[ProxyRecord]) -> ProxyRecord:
        now = time.time()

        def usage_ratio(record: ProxyRecord) -> float:
            age = max(now - record.added_at, 1e-3)
            return record.request_count / age

        ranked = sorted(candidates, key=usage_ratio)
        top = ranked[: min(self._top_k, len(ranked))]
        return self._rng.choice(top)

    def _weighted_country(self) -> str:
        if not self._geo_distribution:
            return "OTHER"
        countries = list(self._geo_distribution)
        weights = list(self._geo_distribution.values())
        return self._rng.choices(countries, weights=weights, k=1)[0]

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    async def report_success(self, proxy: ProxyRecord) -> None:
        """Record a successful request through *proxy*."""
        async with self._lock:
            proxy.success_count += 1
            self._recompute_success_rate(proxy)

    async def report_failure(self, proxy: ProxyRecord, error: str | None = None) -> bool:
        """Record a failed request through *proxy*.

        Returns ``True`` when the failure pushed the proxy under the success
        rate floor and it was auto-blocked.
        """
        async with self._lock:
            proxy.failure_count += 1
            health = self._health[proxy.id]
            health.last_error = error
            self._recompute_success_rate(proxy)

            samples = proxy.success_count + proxy.failure_count
            should_block = (
                samples >= self._min_samples
                and health.success_rate < self._success_rate_floor
                and not self._is_blocked(proxy.id, time.time())
            )
            if should_block:
                self._block_locked(proxy.id, self._auto_block_seconds, reason="success_rate")

        logger.warning(
            "Proxy %s failed (failures=%d, success_rate=%.2f)",
            proxy.id,
            proxy.failure_count,
            self._health[proxy.id].success_rate,
            extra={"proxy_id": proxy.id, "error_reason": error},
        )
        return should_block

    def _recompute_success_rate(self, proxy: ProxyRecord) -> None:
        samples = proxy.success_count + proxy.failure_count
        self._health[proxy.id].success_rate = (
            proxy.success_count / samples if samples else 1.0
        )

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    async def block(self, proxy_id: str, duration_seconds: float, reason: str = "detection") -> None:
        """Block *proxy_id* for *duration_seconds*."""
        async with self._lock:
            self._block_locked(proxy_id, duration_seconds, reason)

    def _block_locked(self, proxy_id: str, duration_seconds: float, reason: str) -> None:
        health = self._health[proxy_id]
        health.blocked_until = time.time() + duration_seconds
        health.block_reason = reason
        health.status = HealthStatus.BLOCKED
        logger.warning(
            "Proxy %s blocked for %.0fs (%s)",
            proxy_id,
            duration_seconds,
            reason,
            extra={"proxy_id": proxy_id},
        )

    async def unblock(self, proxy_id: str) -> None:
        """Clear any block on *proxy_id*."""
        async with self._lock:
            self._unblock_locked(proxy_id)

    def _unblock_locked(self, proxy_id: str) -> None:
        health = self._health[proxy_id]
        health.blocked_until = None
        health.block_reason = None
        health.status = HealthStatus.HEALTHY
        logger.info("Proxy %s unblocked", proxy_id, extra={"proxy_id": proxy_id})

    # ------------------------------------------------------------------
    # Background health checks
    # ------------------------------------------------------------------

    async def run_health_checks(self) -> None:
        """Execute a single health-check cycle.

        Expired blocks are cleared first. Proxies whose last check is older
        than the staleness threshold are then measured in batches; the
        snapshot of targets is taken under the lock, measurements run
        without it.
        """
        now = time.time()
        async with self._lock:
            for proxy_id, health in self._health.items():
                if health.blocked_until is not None and health.blocked_until <= now:
                    self._unblock_locked(proxy_id)

            stale = [
                self._records[proxy_id]
                for proxy_id, health in self._health.items()
                if not health.blocked
                and now - health.last_check >= self._health_staleness_seconds
            ]

        for start in range(0, len(stale), self._batch_size):
            batch = stale[start : start + self._batch_size]
            results = await asyncio.gather(*(self._measure_latency(p) for p in batch))
            async with self._lock:
                for proxy, latency in zip(batch, results):
                    self._apply_health_result(proxy, latency)

    async def _measure_latency(self, proxy: ProxyRecord) -> float | None:
        """Average latency in ms across control endpoints, ``None`` if unreachable."""
        timings: list[float] = []
        try:
            async with httpx.AsyncClient(
                proxy=self._proxy_url(proxy),
                timeout=httpx.Timeout(10.0),
            ) as client:
                for endpoint in self._control_endpoints:
                    started = time.monotonic()
                    try:
                        response = await client.head(endpoint)
                    except httpx.TimeoutException:
                        timings.append(10_000.0)
                        continue
                    if response.status_code >= 500:
                        timings.append(10_000.0)
                        continue
                    timings.append((time.monotonic() - started) * 1000)
        except httpx.HTTPError as exc:
            logger.debug("Health check failed for proxy %s: %s", proxy.id, exc)
            return None

        return sum(timings) / len(timings) if timings else None

    def _apply_health_result(self, proxy: ProxyRecord, latency_ms: float | None) -> None:
        health = self._health[proxy.id]
        health.last_check = time.time()
        if health.blocked:
            return
        if latency_ms is None:
            health.status = HealthStatus.UNHEALTHY
            return
        health.latency_ms = latency_ms
        healthy = (
            latency_ms < self._degraded_latency_ms
            and health.success_rate >= self._success_rate_floor
        )
        health.status = HealthStatus.HEALTHY if healthy else HealthStatus.DEGRADED

    @staticmethod
    def _proxy_url(proxy: ProxyRecord) -> str:
        auth = f"{proxy.username}:{proxy.password}@" if proxy.username else ""
        return f"{proxy.protocol}://{auth}{proxy.host}:{proxy.port}"

    # ------------------------------------------------------------------
    # Export / stats
    # ------------------------------------------------------------------

    @staticmethod
    def export_proxy_config(proxy: ProxyRecord) -> ProxyConfig:
        """Browser-facing configuration for *proxy*."""
        return ProxyConfig(
            server=proxy.server,
            username=proxy.username,
            password=proxy.password,
        )

    def get(self, proxy_id: str) -> ProxyRecord:
        return self._records[proxy_id]

    def get_health(self, proxy_id: str) -> ProxyHealth:
        return self._health[proxy_id]

    def get_stats(self) -> dict:
        """Return identity pool statistics for the health endpoint."""
        now = time.time()
        stats: dict = {
            "total": len(self._records),
            "healthy": 0,
            "degraded": 0,
            "unhealthy": 0,
            "blocked": 0,
            "by_type": {proxy_type.value: 0 for proxy_type in ProxyType},
            "by_country": {},
            "by_provider": {},
        }

        for record in self._records.values():
            stats["by_type"][record.type.value] += 1
            stats["by_country"][record.country] = stats["by_country"].get(record.country, 0) + 1
            stats["by_provider"][record.provider] = stats["by_provider"].get(record.provider, 0) + 1

            health = self._health[record.id]
            if self._is_blocked(record.id, now):
                stats["blocked"] += 1
            elif health.status == HealthStatus.HEALTHY:
                stats["healthy"] += 1
            elif health.status == HealthStatus.DEGRADED:
                stats["degraded"] += 1
            else:
                stats["unhealthy"] += 1

        return stats
