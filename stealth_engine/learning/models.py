"""Per-aspect learning models.

Every model keeps only JSON-safe state (dicts, lists, numbers, strings) so
``serialize`` can hand it straight to the learning store, and
``deserialize(serialize(m))`` rebuilds a model whose ``recommend`` output is
identical.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from stealth_engine.learning.types import InteractionRecord, Recommendation

logger = logging.getLogger(__name__)


def _context_key(record: InteractionRecord) -> str:
    return f"{record.context.domain}_{record.context.page_type}"


class LearningModel(ABC):
    """Base for the sub-models owned by the learning engine.

    Subclasses MUST set ``name`` as a class attribute.  ``learn`` receives
    records the engine considers informative for the model (successes, or
    detections for the detection model); ``update`` receives every record.
    """

    name: str

    @abstractmethod
    def learn(self, record: InteractionRecord) -> None: ...

    @abstractmethod
    def update(self, record: InteractionRecord) -> None: ...

    @abstractmethod
    def recommend(self, record: InteractionRecord) -> list[Recommendation]: ...

    def periodic_update(self) -> None:
        """Compact state between learning cycles."""

    @abstractmethod
    def _state(self) -> dict[str, Any]: ...

    @abstractmethod
    def _restore(self, state: dict[str, Any]) -> None: ...

    def serialize(self) -> dict[str, Any]:
        return copy.deepcopy(self._state())

    def deserialize(self, data: dict[str, Any]) -> None:
        self._restore(copy.deepcopy(data))


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class TimingModel(LearningModel):
    """Learns response-time targets per (domain, page type).

    A streak of consecutive failures for the same key produces a
    recommendation to slow down even before any success was seen.
    """

    name = "timing"

    MIN_SAMPLES = 5
    MAX_SAMPLES = 100
    KEPT_SAMPLES = 50
    FAILURE_STREAK = 3
    MAX_WINDOWS = 100

    def __init__(self) -> None:
        self.samples: dict[str, list[float]] = {}
        self.optimal: dict[str, float] = {}
        self.failure_streaks: dict[str, int] = {}
        self.hour_windows: list[dict[str, Any]] = []

    def learn(self, record: InteractionRecord) -> None:
        key = _context_key(record)
        samples = self.samples.setdefault(key, [])
        samples.append(record.metrics.response_time_ms)
        if len(samples) > self.MIN_SAMPLES:
            ordered = sorted(samples)
            self.optimal[key] = ordered[len(ordered) // 2]

    def learn_difference(self, avoid_hour: int, prefer_hour: int, weight: float = 0.8) -> None:
        self.hour_windows.append({"avoid_hour": avoid_hour, "prefer_hour": prefer_hour, "weight": weight})
        del self.hour_windows[: -self.MAX_WINDOWS]

    def update(self, record: InteractionRecord) -> None:
        key = _context_key(record)
        if record.success:
            self.failure_streaks[key] = 0
        else:
            self.failure_streaks[key] = self.failure_streaks.get(key, 0) + 1

    def recommend(self, record: InteractionRecord) -> list[Recommendation]:
        key = _context_key(record)
        recs = []
        if key in self.optimal:
            recs.append(Recommendation("timing", "adjust_delays", self.optimal[key], 0.8, 5))
        if self.failure_streaks.get(key, 0) >= self.FAILURE_STREAK:
            recs.append(Recommendation("timing", "increase_delays", 1.5, 0.6, 5))
        return recs

    def avoided_hours(self) -> list[int]:
        return sorted({w["avoid_hour"] for w in self.hour_windows})

    def periodic_update(self) -> None:
        for key, samples in self.samples.items():
            if len(samples) > self.MAX_SAMPLES:
                self.samples[key] = samples[-self.KEPT_SAMPLES:]

    def _state(self) -> dict[str, Any]:
        return {
            "samples": self.samples,
            "optimal": self.optimal,
            "failure_streaks": self.failure_streaks,
            "hour_windows": self.hour_windows,
        }

    def _restore(self, state: dict[str, Any]) -> None:
        self.samples = state.get("samples", {})
        self.optimal = state.get("optimal", {})
        self.failure_streaks = state.get("failure_streaks", {})
        self.hour_windows = state.get("hour_windows", [])


# ---------------------------------------------------------------------------
# Behavior
# ---------------------------------------------------------------------------


class BehaviorModel(LearningModel):
    name = "behavior"

    SWITCH_THRESHOLD = 0.7

    def __init__(self) -> None:
        self.profiles: dict[str, dict[str, int]] = {}
        self.best_profile: str | None = None

    def _entry(self, profile: str) -> dict[str, int]:
        return self.profiles.setdefault(profile, {"successes": 0, "failures": 0})

    def learn(self, record: InteractionRecord) -> None:
        self._entry(record.context.behavior_profile)["successes"] += 1

    def learn_difference(self, avoid_profile: str, prefer_profile: str) -> None:
        self._entry(prefer_profile)["successes"] += 1
        self._entry(avoid_profile)["failures"] += 1

    def update(self, record: InteractionRecord) -> None:
        if not record.success:
            self._entry(record.context.behavior_profile)["failures"] += 1

    def score(self, profile: str) -> float:
        entry = self.profiles.get(profile)
        if not entry:
            return 0.0
        return entry["successes"] / (entry["successes"] + entry["failures"] + 1)

    def recommend(self, record: InteractionRecord) -> list[Recommendation]:
        if not self.profiles:
            return []
        # Ties break by name so the output is stable
        best = max(sorted(self.profiles), key=self.score)
        score = self.score(best)
        if score <= self.SWITCH_THRESHOLD or best == record.context.behavior_profile:
            return []
        return [Recommendation("behavior", "switch_profile", best, score, 8)]

    def periodic_update(self) -> None:
        if self.profiles:
            self.best_profile = max(sorted(self.profiles), key=self.score)

    def _state(self) -> dict[str, Any]:
        return {"profiles": self.profiles, "best_profile": self.best_profile}

    def _restore(self, state: dict[str, Any]) -> None:
        self.profiles = state.get("profiles", {})
        self.best_profile = state.get("best_profile")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class ExtractionModel(LearningModel):
    """Tracks extraction quality and selector replacements per domain."""

    name = "extraction"

    def __init__(self) -> None:
        self.performance: dict[str, dict[str, float]] = {}
        self.adaptive_selectors: dict[str, dict[str, str]] = {}

    def learn(self, record: InteractionRecord) -> None:
        overrides = record.context.selector_overrides
        if overrides:
            selectors = self.adaptive_selectors.setdefault(record.context.domain, {})
            for old, new in overrides:
                selectors[old] = new

    def update(self, record: InteractionRecord) -> None:
        entry = self.performance.setdefault(
            record.context.domain, {"attempts": 0, "total_quality": 0.0}
        )
        entry["attempts"] += 1
        entry["total_quality"] += record.metrics.data_quality

    def average_quality(self, domain: str) -> float:
        entry = self.performance.get(domain)
        if not entry or not entry["attempts"]:
            return 0.0
        return entry["total_quality"] / entry["attempts"]

    def recommend(self, record: InteractionRecord) -> list[Recommendation]:
        selectors = self.adaptive_selectors.get(record.context.domain)
        if not selectors:
            return []
        return [Recommendation("extraction", "use_adaptive_selector", dict(selectors), 0.7, 6)]

    def _state(self) -> dict[str, Any]:
        return {"performance": self.performance, "adaptive_selectors": self.adaptive_selectors}

    def _restore(self, state: dict[str, Any]) -> None:
        self.performance = state.get("performance", {})
        self.adaptive_selectors = state.get("adaptive_selectors", {})


# ---------------------------------------------------------------------------
# Detection avoidance
# ---------------------------------------------------------------------------


class DetectionModel(LearningModel):
    name = "detection"

    MAX_CONTEXTS = 50

    def __init__(self) -> None:
        self.indicators: dict[str, dict[str, Any]] = {}

    def learn(self, record: InteractionRecord) -> None:
        for indicator in record.metrics.detections:
            entry = self.indicators.setdefault(indicator, {"occurrences": 0, "contexts": []})
            entry["occurrences"] += 1
            entry["contexts"].append([record.context.domain, record.context.page_type])

    def update(self, record: InteractionRecord) -> None:
        # Failed detections arrive through learn via failure analysis
        if record.success and record.metrics.detections:
            self.learn(record)

    def risks_for(self, domain: str, page_type: str) -> list[str]:
        return sorted(
            indicator
            for indicator, entry in self.indicators.items()
            if [domain, page_type] in entry["contexts"]
        )

    def recommend(self, record: InteractionRecord) -> list[Recommendation]:
        risks = self.risks_for(record.context.domain, record.context.page_type)
        if not risks:
            return []
        value = {
            "slow_down": True,
            "enhance_behavior": True,
            "rotate_identity": len(risks) > 2,
        }
        return [Recommendation("detection", "increase_stealth", value, 0.9, 10)]

    def periodic_update(self) -> None:
        for entry in self.indicators.values():
            del entry["contexts"][: -self.MAX_CONTEXTS]

    def _state(self) -> dict[str, Any]:
        return {"indicators": self.indicators}

    def _restore(self, state: dict[str, Any]) -> None:
        self.indicators = state.get("indicators", {})


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------


class PerformanceModel(LearningModel):
    """Running per-domain baselines and a recent-latency window."""

    name = "performance"

    DEGRADATION_FACTOR = 1.5
    MIN_BASELINE_SAMPLES = 10
    RECENT_WINDOW = 20
    RECENT_COMPARED = 5

    def __init__(self) -> None:
        self.baselines: dict[str, dict[str, float]] = {}
        self.recent: dict[str, list[float]] = {}

    def learn(self, record: InteractionRecord) -> None:
        """Baselines are maintained by ``update``."""

    def update(self, record: InteractionRecord) -> None:
        domain = record.context.domain
        metrics = record.metrics
        base = self.baselines.setdefault(
            domain,
            {"samples": 0, "response_time_ms": 0.0, "cpu_usage": 0.0, "memory_usage": 0.0},
        )
        base["samples"] += 1
        n = base["samples"]
        base["response_time_ms"] += (metrics.response_time_ms - base["response_time_ms"]) / n
        base["cpu_usage"] += (metrics.cpu_usage - base["cpu_usage"]) / n
        base["memory_usage"] += (metrics.memory_usage - base["memory_usage"]) / n

        window = self.recent.setdefault(domain, [])
        window.append(metrics.response_time_ms)
        del window[: -self.RECENT_WINDOW]

    def check_degradation(self) -> bool:
        """True when any domain's latest latencies run well above its baseline."""
        for domain, base in self.baselines.items():
            if base["samples"] < self.MIN_BASELINE_SAMPLES:
                continue
            latest = self.recent.get(domain, [])[-self.RECENT_COMPARED:]
            if not latest:
                continue
            if sum(latest) / len(latest) > base["response_time_ms"] * self.DEGRADATION_FACTOR:
                return True
        return False

    def recommend(self, record: InteractionRecord) -> list[Recommendation]:
        base = self.baselines.get(record.context.domain)
        if not base or base["response_time_ms"] <= 0:
            return []
        if record.metrics.response_time_ms <= base["response_time_ms"] * self.DEGRADATION_FACTOR:
            return []
        value = {
            "reduce_parallelism": True,
            "increase_timeouts": True,
            "simplify_extraction": True,
        }
        return [Recommendation("performance", "optimize_resources", value, 0.7, 4)]

    def _state(self) -> dict[str, Any]:
        return {"baselines": self.baselines, "recent": self.recent}

    def _restore(self, state: dict[str, Any]) -> None:
        self.baselines = state.get("baselines", {})
        self.recent = state.get("recent", {})


def default_models() -> dict[str, LearningModel]:
    models: list[LearningModel] = [
        TimingModel(),
        BehaviorModel(),
        ExtractionModel(),
        DetectionModel(),
        PerformanceModel(),
    ]
    return {model.name: model for model in models}
