"""Error recovery engine.

Classifies each fault, escalates suspicion on detection events, then walks
the classification's ordered strategy list until one succeeds. Every
success returns a new :class:`SessionContext` with the strategy's updates
applied; exhausting the list raises ``RecoveryExhaustedError`` carrying the
classification and the strategies tried.

Above the detection threshold the engine pauses the whole pipeline for a
randomized cooldown and drops the session to the most conservative
behavior profile. Sessions wait on :meth:`wait_until_resumed` before each
attempt so the pause applies to all of them, not just the one that
tripped it. Detections arriving during a cooldown join it instead of
starting another one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING

from stealth_engine.browser.behavior import MOST_CONSERVATIVE, get_profile
from stealth_engine.middleware.error_handler import (
    CircuitOpenError,
    CollectorError,
    RecoveryExhaustedError,
)
from stealth_engine.resilience.circuit_breaker import CircuitBreaker
from stealth_engine.resilience.classifier import (
    ErrorCategory,
    ErrorClassification,
    ErrorClassifier,
    Fault,
    StrategyKind,
)
from stealth_engine.resilience.strategies import (
    RecoveryDeps,
    RecoveryRequest,
    RecoveryStrategy,
    StrategyOutcome,
    build_strategies,
)

if TYPE_CHECKING:
    from stealth_engine.browser.engine import PageSnapshot
    from stealth_engine.services.session import SessionContext

logger = logging.getLogger(__name__)

MAX_SUSPICION = 10
SUSPICION_PER_DETECTION = 2
LEARNED_ORDER_MIN_SUCCESSES = 5
HISTORY_EVICTION_BATCH = 100


@dataclass
class ErrorHistoryEntry:
    occurrences: int = 0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    successful_strategies: Counter = field(default_factory=Counter)
    failed_strategies: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class SelectorReplacement:
    replacement: str
    confidence: float
    timestamp: float


@dataclass
class DetectionState:
    suspicion_level: int = 0
    detection_count: int = 0
    last_detection: float | None = None
    cooldowns: int = 0


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of a successful :meth:`ErrorRecoveryEngine.handle_error` call."""

    strategy: StrategyKind
    context: SessionContext
    classification: ErrorClassification
    attempted: tuple[StrategyKind, ...]
    details: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))
    duration_ms: float = 0.0


class ErrorRecoveryEngine:
    """Classifies faults and executes recovery strategies.

    Args:
        deps: Collaborators handed to every strategy (pool, fingerprints,
            CAPTCHA solver, sleep, rng, backoff tunables).
        breaker: Circuit breaker shared by every session of the target scope.
        detection_threshold: Suspicion level that triggers the global cooldown.
        cooldown_range: Bounds in seconds of the randomized cooldown.
        max_history: Error-history keys kept before the oldest are evicted.
    """

    def __init__(
        self,
        deps: RecoveryDeps,
        *,
        breaker: CircuitBreaker | None = None,
        classifier: ErrorClassifier | None = None,
        detection_threshold: int = 5,
        cooldown_range: tuple[float, float] = (30.0, 60.0),
        max_history: int = 1000,
    ) -> None:
        self._deps = deps
        self.breaker = breaker or CircuitBreaker()
        self._classifier = classifier or ErrorClassifier()
        self._strategies: dict[StrategyKind, RecoveryStrategy] = build_strategies()
        self._detection_threshold = detection_threshold
        self._cooldown_range = cooldown_range
        self._max_history = max_history

        self._history: dict[str, ErrorHistoryEntry] = {}
        self._learned_order: dict[str, tuple[StrategyKind, ...]] = {}
        self._selector_db: dict[str, dict[str, SelectorReplacement]] = {}
        self._detection = DetectionState()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._cooldown: asyncio.Task | None = None

        self._metrics = {
            "errors_handled": 0,
            "successful_recoveries": 0,
            "failed_recoveries": 0,
            "detection_events": 0,
            "adaptations_made": 0,
            "avg_recovery_time_ms": 0.0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def suspicion_level(self) -> int:
        return self._detection.suspicion_level

    def classify(self, error: BaseException | Fault) -> ErrorClassification:
        fault = error if isinstance(error, Fault) else Fault.from_exception(error)
        return self._classifier.classify(fault)

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    async def wait_until_resumed(self) -> None:
        """Block while a detection cooldown is pausing the pipeline."""
        await self._resumed.wait()

    async def handle_error(
        self,
        error: BaseException | Fault,
        context: SessionContext,
        attempt: int,
        snapshot: PageSnapshot | None = None,
    ) -> RecoveryResult:
        """Recover from *error* for the session described by *context*.

        Raises
        ------
        CircuitOpenError
            If the circuit breaker rejects new work.
        RecoveryExhaustedError
            If every strategy for the classification failed.
        """
        started = time.monotonic()
        self._metrics["errors_handled"] += 1

        if not self.breaker.can_call():
            raise CircuitOpenError(retry_after=round(self.breaker.retry_after(), 1))

        fault = error if isinstance(error, Fault) else Fault.from_exception(error)
        classification = self._classifier.classify(fault)
        self._record_history(classification)

        log_extra = {
            **context.log_extra(),
            "error_category": classification.category.value,
            "error_type": classification.type,
            "attempt": attempt,
        }
        logger.warning("Handling %s fault: %s", classification.key, fault.message, extra=log_extra)

        if classification.category == ErrorCategory.DETECTION:
            context = await self._handle_detection(classification, context)

        strategies = self.strategies_for(classification)
        attempted: list[StrategyKind] = []

        for kind in strategies:
            attempted.append(kind)
            request = RecoveryRequest(
                fault=fault,
                context=context,
                attempt=attempt,
                classification=classification,
                snapshot=snapshot,
            )
            outcome = await self._run_strategy(kind, request, log_extra)
            if not outcome.success:
                self._history[classification.key].failed_strategies.add(kind.value)
                continue

            context = self._apply(kind, outcome, context)
            self._record_success(classification, kind)

            duration_ms = (time.monotonic() - started) * 1000
            self._metrics["successful_recoveries"] += 1
            self._update_avg_recovery_time(duration_ms)
            logger.info(
                "Recovered from %s via %s",
                classification.key,
                kind.value,
                extra={**log_extra, "strategy": kind.value, "duration_ms": round(duration_ms, 2)},
            )
            return RecoveryResult(
                strategy=kind,
                context=context,
                classification=classification,
                attempted=tuple(attempted),
                details=outcome.details,
                duration_ms=duration_ms,
            )

        self._metrics["failed_recoveries"] += 1
        logger.error(
            "Recovery exhausted for %s after %d strategies",
            classification.key,
            len(attempted),
            extra=log_extra,
        )
        raise RecoveryExhaustedError(
            f"All recovery strategies exhausted for {classification.key}",
            classification=classification,
            attempted=[kind.value for kind in attempted],
            category=classification.category.value,
            error_type=classification.type,
        )

    def strategies_for(self, classification: ErrorClassification) -> tuple[StrategyKind, ...]:
        """Strategy order for *classification*, learned order when available."""
        return self._learned_order.get(classification.key, classification.strategies)

    def selector_replacement(self, domain: str, selector: str) -> SelectorReplacement | None:
        return self._selector_db.get(domain, {}).get(selector)

    def selector_overrides_for(self, domain: str) -> tuple[tuple[str, str], ...]:
        """Known replacements for *domain*, to seed new sessions."""
        return tuple((old, entry.replacement) for old, entry in self._selector_db.get(domain, {}).items())

    def get_metrics(self) -> dict:
        handled = self._metrics["errors_handled"]
        return {
            **self._metrics,
            "avg_recovery_time_ms": round(self._metrics["avg_recovery_time_ms"], 2),
            "success_rate": (
                self._metrics["successful_recoveries"] / handled if handled else 0.0
            ),
            "detection_state": {
                "suspicion_level": self._detection.suspicion_level,
                "detection_count": self._detection.detection_count,
                "cooldowns": self._detection.cooldowns,
                "paused": self.paused,
            },
            "circuit_breaker": self.breaker.get_stats(),
            "known_errors": len(self._history),
            "total_patterns": self._classifier.pattern_count(),
            "selector_replacements": sum(len(entries) for entries in self._selector_db.values()),
        }

    def reset(self) -> None:
        """Clear detection state, learned selectors and the circuit breaker."""
        self._detection = DetectionState()
        self._selector_db.clear()
        self.breaker.reset()
        self._cooldown = None
        self._resumed.set()
        logger.info("Recovery engine state reset")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_strategy(
        self,
        kind: StrategyKind,
        request: RecoveryRequest,
        log_extra: dict,
    ) -> StrategyOutcome:
        try:
            outcome = await self._strategies[kind].execute(request, self._deps)
        except CollectorError as exc:
            outcome = StrategyOutcome.failed(exc.message)

        if not outcome.success:
            logger.info(
                "Strategy %s failed: %s",
                kind.value,
                outcome.reason,
                extra={**log_extra, "strategy": kind.value},
            )
        return outcome

    def _apply(
        self,
        kind: StrategyKind,
        outcome: StrategyOutcome,
        context: SessionContext,
    ) -> SessionContext:
        if outcome.updates:
            self._metrics["adaptations_made"] += 1
            context = replace(context, **outcome.updates)

        if kind == StrategyKind.UPDATE_SELECTORS:
            self._update_selector_db(
                context.domain,
                str(outcome.details["old"]),
                str(outcome.details["new"]),
                float(outcome.details["confidence"]),  # type: ignore[arg-type]
            )
        elif kind == StrategyKind.SOLVE_CAPTCHA:
            self._detection.suspicion_level = max(0, self._detection.suspicion_level - 1)

        return context

    async def _handle_detection(
        self,
        classification: ErrorClassification,
        context: SessionContext,
    ) -> SessionContext:
        state = self._detection
        state.detection_count += 1
        state.last_detection = time.time()
        state.suspicion_level = min(MAX_SUSPICION, state.suspicion_level + SUSPICION_PER_DETECTION)
        self._metrics["detection_events"] += 1

        logger.warning(
            "Detection event (%s), suspicion %d/%d",
            classification.type,
            state.suspicion_level,
            MAX_SUSPICION,
            extra={**context.log_extra(), "suspicion_level": state.suspicion_level},
        )

        if state.suspicion_level < self._detection_threshold:
            return context

        if self._cooldown is None:
            cooldown = self._deps.rng.uniform(*self._cooldown_range)
            state.cooldowns += 1
            logger.warning(
                "Suspicion above threshold, pausing pipeline for %.1fs",
                cooldown,
                extra={**context.log_extra(), "suspicion_level": state.suspicion_level},
            )
            self._resumed.clear()
            self._cooldown = asyncio.ensure_future(self._cool_down(cooldown))
        else:
            logger.info(
                "Joining active pipeline cooldown",
                extra={**context.log_extra(), "suspicion_level": state.suspicion_level},
            )

        # Shielded so an aborted session does not end the pause for everyone
        await asyncio.shield(self._cooldown)

        profile = get_profile(MOST_CONSERVATIVE)
        return replace(
            context,
            behavior_profile=profile.name,
            min_delay_ms=max(context.min_delay_ms, profile.min_delay_ms),
        )

    async def _cool_down(self, seconds: float) -> None:
        try:
            await self._deps.sleep(seconds)
        finally:
            # A reset may have replaced this cooldown already
            if self._cooldown is asyncio.current_task():
                self._cooldown = None
                self._resumed.set()

    def _record_history(self, classification: ErrorClassification) -> None:
        entry = self._history.get(classification.key)
        if entry is None:
            entry = self._history[classification.key] = ErrorHistoryEntry()
        entry.occurrences += 1
        entry.last_seen = time.time()

        if len(self._history) > self._max_history:
            oldest = sorted(self._history, key=lambda key: self._history[key].last_seen)
            for key in oldest[:HISTORY_EVICTION_BATCH]:
                if key != classification.key:
                    del self._history[key]
                    self._learned_order.pop(key, None)

    def _record_success(self, classification: ErrorClassification, kind: StrategyKind) -> None:
        entry = self._history[classification.key]
        entry.successful_strategies[kind] += 1

        if sum(entry.successful_strategies.values()) > LEARNED_ORDER_MIN_SUCCESSES:
            # Stable sort keeps the table order among equally successful strategies
            self._learned_order[classification.key] = tuple(
                sorted(
                    classification.strategies,
                    key=lambda strategy: -entry.successful_strategies.get(strategy, 0),
                )
            )

    def _update_selector_db(self, domain: str, old: str, new: str, confidence: float) -> None:
        self._selector_db.setdefault(domain, {})[old] = SelectorReplacement(
            replacement=new,
            confidence=confidence,
            timestamp=time.time(),
        )
        logger.info("Selector replacement recorded for %s: %r -> %r", domain, old, new)

    def _update_avg_recovery_time(self, duration_ms: float) -> None:
        count = self._metrics["successful_recoveries"]
        old_avg = self._metrics["avg_recovery_time_ms"]
        self._metrics["avg_recovery_time_ms"] = (old_avg * (count - 1) + duration_ms) / count
