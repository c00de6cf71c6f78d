"""Session orchestrator: drives one unit of collection work end to end.

Coordinates a collection through the pipeline: apply pending adaptations →
acquire identity → create browser session → human-paced delay → navigate →
extract → report outcome.  Failures go to the recovery engine, which may
hand back an updated session (new proxy, fingerprint, profile, selectors)
for the next attempt.  Every attempt, including an aborted one, is reported
to the learning engine as an :class:`InteractionRecord`.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from stealth_engine.browser.behavior import escalate
from stealth_engine.browser.engine import BrowserEngine, PageSnapshot
from stealth_engine.browser.fingerprint import FingerprintGenerator
from stealth_engine.config.domain_policies import DomainPolicy, policy_for
from stealth_engine.extractors.extractor import ExtractionResult, IntelligentExtractor
from stealth_engine.learning.engine import AdaptiveLearningEngine
from stealth_engine.learning.types import (
    Adaptation,
    InteractionContext,
    InteractionMetrics,
    InteractionRecord,
    Outcome,
    Recommendation,
)
from stealth_engine.middleware.error_handler import (
    CircuitOpenError,
    DetectionError,
    ExtractionError,
    PoolExhaustedError,
    RecoveryExhaustedError,
    UnknownDataTypeError,
)
from stealth_engine.proxy.pool import IdentityPool
from stealth_engine.proxy.types import AcquireCriteria, ProxyType
from stealth_engine.resilience.classifier import ErrorCategory, Fault
from stealth_engine.resilience.recovery import ErrorRecoveryEngine
from stealth_engine.services.session import (
    CollectMetadata,
    CollectOptions,
    CollectResult,
    SessionContext,
    domain_of,
)

logger = logging.getLogger(__name__)

MAX_DELAY_FLOOR_MS = 30000
MAX_THROTTLE = 4.0
MAX_NAVIGATION_TIMEOUT_MS = 120000
MAX_AUDIT_ENTRIES = 500

# Errors that no retry or recovery can fix
_FATAL = (CircuitOpenError, PoolExhaustedError, UnknownDataTypeError, RecoveryExhaustedError)


@dataclass
class DomainTuning:
    """Adaptations applied to future sessions against one domain."""

    min_delay_ms: int = 0
    behavior_profile: str | None = None
    throttle_factor: float = 1.0
    navigation_timeout_ms: int | None = None
    selector_overrides: dict[str, str] = field(default_factory=dict)
    avoid_proxy_ids: set[str] = field(default_factory=set)
    last_proxy_id: str | None = None


class SessionOrchestrator:
    """Runs collections against the injected collaborators.

    Dependencies are injected via the constructor so the orchestrator is
    testable with an in-memory browser engine and no network.
    """

    def __init__(
        self,
        *,
        pool: IdentityPool,
        browser: BrowserEngine,
        recovery: ErrorRecoveryEngine,
        learning: AdaptiveLearningEngine,
        extractor: IntelligentExtractor,
        fingerprints: FingerprintGenerator,
        policies: dict[str, DomainPolicy] | None = None,
        navigation_timeout_ms: int = 30000,
        max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._browser = browser
        self._recovery = recovery
        self._learning = learning
        self._extractor = extractor
        self._fingerprints = fingerprints
        self._policies = policies or {}
        self._navigation_timeout_ms = navigation_timeout_ms
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep

        self._tuning: dict[str, DomainTuning] = {}
        self.audit_log: deque[dict] = deque(maxlen=MAX_AUDIT_ENTRIES)
        self._active: dict[str, SessionContext] = {}
        self._metrics = {
            "sessions_started": 0,
            "sessions_succeeded": 0,
            "sessions_failed": 0,
            "sessions_aborted": 0,
            "attempts": 0,
            "records_collected": 0,
            "adaptations_applied": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def collect(self, url: str, options: CollectOptions | None = None) -> CollectResult:
        """Collect records from *url*.

        Raises
        ------
        CircuitOpenError
            If the shared circuit breaker rejects new work.
        PoolExhaustedError
            If no proxy satisfies the session's criteria.
        RecoveryExhaustedError
            If every recovery strategy for a fault failed.
        UnknownDataTypeError
            If no extraction schema exists for the requested data type.
        """
        options = options or CollectOptions()
        self._extractor.registry.get(options.data_type)
        self.apply_pending_adaptations()

        started = time.monotonic()
        context = await self._new_session(url, options)
        self._metrics["sessions_started"] += 1
        self._active[context.session_id] = context
        logger.info("Session started", extra=context.log_extra())

        max_attempts = options.max_attempts or self._max_attempts
        handle: object | None = None
        unreported = True
        attempt = 0
        try:
            while True:
                attempt += 1
                unreported = True
                self._metrics["attempts"] += 1
                await self._recovery.wait_until_resumed()
                if not self._recovery.breaker.can_call():
                    raise CircuitOpenError(retry_after=round(self._recovery.breaker.retry_after(), 1))

                attempt_started = time.monotonic()
                snapshot: PageSnapshot | None = None
                try:
                    if handle is None:
                        handle = await self._open(context)
                    snapshot, context = await self._navigate(handle, context)
                    context, result = await self._extract(snapshot, context)
                except _FATAL:
                    raise
                except Exception as exc:
                    elapsed_ms = (time.monotonic() - attempt_started) * 1000
                    await self._record_failure(context, exc, elapsed_ms)
                    unreported = False
                    if attempt >= max_attempts:
                        self._metrics["sessions_failed"] += 1
                        raise
                    recovered = await self._recovery.handle_error(exc, context, attempt, snapshot)
                    context = recovered.context
                    if context.restart_required:
                        await self._close(handle)
                        handle = None
                        context = replace(context, restart_required=False)
                    self._active[context.session_id] = context
                    continue

                elapsed_ms = (time.monotonic() - attempt_started) * 1000
                await self._record_success(context, result, elapsed_ms)
                self._metrics["sessions_succeeded"] += 1
                self._metrics["records_collected"] += len(result.records)
                return CollectResult(
                    records=result.records,
                    metadata=CollectMetadata(
                        confidence=result.confidence.overall,
                        pattern_used=result.pattern,
                        elements_processed=result.elements_processed,
                        attempts=attempt,
                        session_id=context.session_id,
                        proxy_id=context.proxy_id,
                        duration_ms=(time.monotonic() - started) * 1000,
                    ),
                )
        except asyncio.CancelledError:
            self._metrics["sessions_aborted"] += 1
            if unreported:
                self._report(context, Outcome.FAILURE, InteractionMetrics(errors=("aborted",)))
            logger.warning("Session aborted", extra=context.log_extra())
            raise
        except _FATAL as exc:
            if unreported:
                self._report(context, Outcome.FAILURE, InteractionMetrics(errors=(type(exc).__name__,)))
            self._metrics["sessions_failed"] += 1
            raise
        finally:
            self._active.pop(context.session_id, None)
            if handle is not None:
                await self._close(handle)

    def apply_pending_adaptations(self) -> list[dict]:
        """Drain the learning engine's adaptation queue and apply each one."""
        entries: list[dict] = []
        for adaptation in self._learning.drain_adaptations():
            entries.extend(self.apply_adaptation(adaptation))
        return entries

    def apply_adaptation(self, adaptation: Adaptation) -> list[dict]:
        domain = adaptation.domain or "*"
        tuning = self._tuning.setdefault(domain, DomainTuning())
        entries = []
        for rec in adaptation.recommendations:
            applied = self._apply_recommendation(domain, tuning, rec)
            entry = {
                "timestamp": time.time(),
                "domain": domain,
                "trigger": adaptation.trigger,
                **rec.to_dict(),
                "applied": applied,
            }
            self.audit_log.append(entry)
            entries.append(entry)
            if applied:
                self._metrics["adaptations_applied"] += 1
        logger.info(
            "Applied adaptation %s for %s (%d recommendations)",
            adaptation.trigger,
            domain,
            len(adaptation.recommendations),
            extra={"confidence": round(adaptation.confidence, 4)},
        )
        return entries

    def tuning_for(self, domain: str) -> DomainTuning:
        return self._tuning.setdefault(domain, DomainTuning())

    def active_sessions(self) -> list[dict]:
        return [
            {"session_id": ctx.session_id, "target_url": ctx.target_url, "proxy_id": ctx.proxy_id}
            for ctx in self._active.values()
        ]

    def get_metrics(self) -> dict:
        return {
            "orchestrator": {**self._metrics, "active_sessions": len(self._active)},
            "pool": self._pool.get_stats(),
            "circuit": self._recovery.breaker.get_stats(),
            "recovery": self._recovery.get_metrics(),
            "learning": self._learning.get_metrics(),
            "extraction": self._extractor.get_stats(),
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _new_session(self, url: str, options: CollectOptions) -> SessionContext:
        domain = domain_of(url)
        policy = policy_for(self._policies, domain)
        tuning = self.tuning_for(domain)

        criteria = AcquireCriteria(
            type=ProxyType(options.proxy_type or policy.proxy_type),
            country=options.country or policy.country,
            exclude_ids=frozenset(tuning.avoid_proxy_ids),
        )
        lease = await self._pool.acquire(criteria)
        tuning.last_proxy_id = lease.record.id
        fingerprint = self._fingerprints.generate(lease.record.country)

        overrides = dict(self._recovery.selector_overrides_for(domain))
        overrides.update(tuning.selector_overrides)

        return SessionContext(
            session_id=uuid.uuid4().hex,
            target_url=url,
            domain=domain,
            page_type=options.page_type or policy.page_type,
            data_type=options.data_type,
            proxy=lease,
            fingerprint=fingerprint,
            behavior_profile=(
                options.behavior_profile or tuning.behavior_profile or policy.behavior_profile
            ),
            min_delay_ms=min(MAX_DELAY_FLOOR_MS, max(policy.min_delay_ms, tuning.min_delay_ms)),
            throttle_factor=tuning.throttle_factor,
            navigation_timeout_ms=tuning.navigation_timeout_ms or self._navigation_timeout_ms,
            selector_overrides=tuple(overrides.items()),
            fallback_urls=tuple(options.fallback_urls),
        )

    async def _open(self, context: SessionContext) -> object:
        proxy_config = IdentityPool.export_proxy_config(context.proxy.record) if context.proxy else None
        return await self._browser.create_session(proxy_config, context.fingerprint)

    async def _close(self, handle: object) -> None:
        try:
            await self._browser.close(handle)
        except Exception:
            logger.warning("Failed to close browser session", exc_info=True)

    async def _navigate(
        self, handle: object, context: SessionContext
    ) -> tuple[PageSnapshot, SessionContext]:
        delay_ms = self._fingerprints.get_action_delay(context.behavior_profile, context.min_delay_ms)
        await self._sleep(delay_ms * context.throttle_factor / 1000)

        snapshot = await self._browser.navigate(
            handle, context.target_url, timeout_ms=context.navigation_timeout_ms
        )
        context = context.with_action("navigate")

        if context.captcha_token:
            await self._browser.inject_captcha_token(handle, context.captcha_token)
            snapshot = await self._browser.snapshot(handle)
            context = replace(context, captcha_token=None).with_action("captcha")
        return snapshot, context

    async def _extract(
        self, snapshot: PageSnapshot, context: SessionContext
    ) -> tuple[SessionContext, ExtractionResult]:
        result = await self._extractor.extract(
            snapshot,
            context.data_type,
            selector_overrides=context.selector_overrides,
            parsing_strategy=context.parsing_strategy,
        )
        context = context.with_action("extract")

        if not result.records:
            self._raise_empty(snapshot, context)
        return context, result

    def _raise_empty(self, snapshot: PageSnapshot, context: SessionContext) -> None:
        classification = self._recovery.classify(
            Fault(message="", status=snapshot.status, page_content=snapshot.html)
        )
        if classification.category == ErrorCategory.DETECTION:
            raise DetectionError(
                f"Detection indicator on page: {classification.matched_pattern}",
                status=snapshot.status,
            )
        schema = self._extractor.registry.get(context.data_type)
        primary = max(schema.fields, key=lambda rule: rule.importance)
        selector = primary.selectors[0] if primary.selectors else None
        raise ExtractionError(
            f"No {context.data_type} records extracted",
            selector=context.selector_for(selector) if selector else None,
        )

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def _report(self, context: SessionContext, outcome: Outcome, metrics: InteractionMetrics) -> None:
        record = InteractionRecord(
            session_id=context.session_id,
            context=InteractionContext.from_session(context),
            outcome=outcome,
            metrics=metrics,
        )
        self._learning.submit(record)

    async def _record_success(
        self, context: SessionContext, result: ExtractionResult, elapsed_ms: float
    ) -> None:
        if context.proxy is not None:
            await self._pool.report_success(context.proxy.record)
        self._recovery.breaker.record_success()
        self._report(
            context,
            Outcome.SUCCESS,
            InteractionMetrics(
                response_time_ms=elapsed_ms,
                data_quality=result.data_quality,
                records_extracted=len(result.records),
            ),
        )
        logger.info(
            "Session succeeded",
            extra={
                **context.log_extra(),
                "records_extracted": len(result.records),
                "confidence": round(result.confidence.overall, 4),
                "duration_ms": round(elapsed_ms, 2),
            },
        )

    async def _record_failure(self, context: SessionContext, exc: BaseException, elapsed_ms: float) -> None:
        classification = self._recovery.classify(exc)
        if context.proxy is not None:
            await self._pool.report_failure(context.proxy.record, str(exc))
        self._recovery.breaker.record_failure()

        detections: tuple[str, ...] = ()
        errors: tuple[str, ...] = (classification.type,)
        if classification.category == ErrorCategory.DETECTION:
            detections = (classification.type,)
        self._report(
            context,
            Outcome.FAILURE,
            InteractionMetrics(response_time_ms=elapsed_ms, errors=errors, detections=detections),
        )

    # ------------------------------------------------------------------
    # Adaptation application
    # ------------------------------------------------------------------

    def _apply_recommendation(self, domain: str, tuning: DomainTuning, rec: Recommendation) -> bool:
        key = rec.key
        if key == ("timing", "adjust_delays"):
            tuning.min_delay_ms = min(MAX_DELAY_FLOOR_MS, max(tuning.min_delay_ms, int(rec.value)))
        elif key == ("timing", "increase_delays"):
            policy = policy_for(self._policies, domain)
            base = max(tuning.min_delay_ms, policy.min_delay_ms, 1000)
            tuning.min_delay_ms = min(MAX_DELAY_FLOOR_MS, int(base * float(rec.value)))
        elif key == ("behavior", "switch_profile"):
            tuning.behavior_profile = str(rec.value)
        elif key == ("detection", "increase_stealth"):
            current = tuning.behavior_profile or policy_for(self._policies, domain).behavior_profile
            if rec.value.get("enhance_behavior"):
                tuning.behavior_profile = escalate(current)
            if rec.value.get("slow_down"):
                tuning.throttle_factor = min(MAX_THROTTLE, tuning.throttle_factor * 1.5)
            if rec.value.get("rotate_identity") and tuning.last_proxy_id:
                tuning.avoid_proxy_ids.add(tuning.last_proxy_id)
        elif key == ("extraction", "use_adaptive_selector"):
            tuning.selector_overrides.update(rec.value)
        elif key == ("performance", "optimize_resources"):
            if rec.value.get("increase_timeouts"):
                current = tuning.navigation_timeout_ms or self._navigation_timeout_ms
                tuning.navigation_timeout_ms = min(MAX_NAVIGATION_TIMEOUT_MS, int(current * 1.5))
        else:
            logger.warning("No handler for recommendation %s/%s", rec.type, rec.action)
            return False
        return True
