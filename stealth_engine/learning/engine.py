"""Adaptive learning engine.

Consumes completed interactions from an inbound queue, feeds the per-aspect
models, and publishes ranked :class:`Adaptation` values on an outbound
queue when the system's confidence drops or failures cluster.  The
orchestrator drains that queue; nothing here calls back into it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
import time
from collections import deque
from dataclasses import replace
from typing import Any

from stealth_engine.learning.memory import InteractionMemory
from stealth_engine.learning.models import LearningModel, default_models
from stealth_engine.learning.patterns import PatternDetector
from stealth_engine.learning.store import LearningStore
from stealth_engine.learning.types import (
    Adaptation,
    InteractionContext,
    InteractionRecord,
    Recommendation,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_WEIGHTS: dict[str, float] = {
    "domain": 0.3,
    "page_type": 0.2,
    "time_of_day": 0.1,
    "actions": 0.2,
    "behavior_profile": 0.2,
}

TIMEOUT_CAUSE_MS = 30000
SIMILAR_LIMIT = 5
PATTERN_MAX_AGE_SECONDS = 7 * 24 * 3600
RECENT_PATTERN_SECONDS = 3600
HISTORICAL_PATTERN_SECONDS = 24 * 3600
MAX_ADAPTATION_LOG = 1000


def strategy_key(domain: str, page_type: str | None, behavior_profile: str | None) -> str:
    raw = f"{domain}_{page_type or 'unknown'}_{behavior_profile or 'default'}"
    return hashlib.md5(raw.encode()).hexdigest()[:16]


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


class AdaptiveLearningEngine:
    """Online learner over interaction outcomes.

    Parameters
    ----------
    store:
        Optional :class:`LearningStore`; persistence is skipped without one.
    rng:
        Source of randomness for exploration.  Inject a seeded
        ``random.Random`` for reproducible ordering.
    """

    def __init__(
        self,
        *,
        store: LearningStore | None = None,
        success_memory: int = 10000,
        failure_memory: int = 5000,
        adaptation_threshold: float = 0.8,
        exploration_rate: float = 0.1,
        confidence_decay: float = 0.99,
        recent_failure_window_seconds: float = 300,
        recent_failure_limit: int = 3,
        pattern_shift_cutoff: float = 0.3,
        similarity_threshold: float = 0.7,
        similarity_weights: dict[str, float] | None = None,
        rng: random.Random | None = None,
        clock=time.time,
    ) -> None:
        self.store = store
        self.adaptation_threshold = adaptation_threshold
        self.exploration_rate = exploration_rate
        self.confidence_decay = confidence_decay
        self.recent_failure_window_seconds = recent_failure_window_seconds
        self.recent_failure_limit = recent_failure_limit
        self.pattern_shift_cutoff = pattern_shift_cutoff
        self.similarity_threshold = similarity_threshold
        self.similarity_weights = dict(similarity_weights or DEFAULT_SIMILARITY_WEIGHTS)
        self._rng = rng or random.Random()
        self._clock = clock

        self.models: dict[str, LearningModel] = default_models()
        self.memory = InteractionMemory(success_memory, failure_memory)
        self.detector = PatternDetector()
        self.patterns: dict[str, dict[str, Any]] = {}
        self.strategies: dict[str, dict[str, Any]] = {}
        self.proxy_preferences: dict[str, int] = {}

        self.confidence = 1.0
        self.adaptations_applied: deque[Adaptation] = deque(maxlen=MAX_ADAPTATION_LOG)
        self.metrics: dict[str, float] = {
            "total_interactions": 0,
            "successful_interactions": 0,
            "failed_interactions": 0,
            "adaptations_generated": 0,
            "learning_progress": 0.0,
            "snapshots_saved": 0,
        }

        self.inbox: asyncio.Queue[InteractionRecord] = asyncio.Queue()
        self.adaptations: asyncio.Queue[Adaptation] = asyncio.Queue()

    # ------------------------------------------------------------------
    # Queue plumbing
    # ------------------------------------------------------------------

    def submit(self, record: InteractionRecord) -> None:
        """Queue *record* for learning.  Never blocks the caller."""
        self.inbox.put_nowait(record)

    async def run(self) -> None:
        """Consume the inbound queue until cancelled."""
        while True:
            record = await self.inbox.get()
            try:
                self.learn_from_interaction(record)
            except Exception:
                logger.exception("Failed to learn from interaction %s", record.session_id)
            finally:
                self.inbox.task_done()

    async def process_pending(self) -> list[Adaptation]:
        """Learn from everything currently queued; return new adaptations."""
        produced = []
        while not self.inbox.empty():
            record = self.inbox.get_nowait()
            try:
                adaptation = self.learn_from_interaction(record)
            finally:
                self.inbox.task_done()
            if adaptation is not None:
                produced.append(adaptation)
        return produced

    def drain_adaptations(self) -> list[Adaptation]:
        drained = []
        while not self.adaptations.empty():
            drained.append(self.adaptations.get_nowait())
        return drained

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    @property
    def risk(self) -> float:
        return 1 - self.confidence

    def learn_from_interaction(self, record: InteractionRecord) -> Adaptation | None:
        self.metrics["total_interactions"] += 1

        detected = self.detector.detect(record, self.find_successful_resolution)
        analysis = replace(record, patterns=tuple(detected))
        self._record_patterns(analysis)
        self.memory.append(analysis)

        if analysis.success:
            self.metrics["successful_interactions"] += 1
            self._update_successful_patterns(analysis)
        else:
            self.metrics["failed_interactions"] += 1
            self._analyze_failure(analysis)

        for model in self.models.values():
            model.update(analysis)

        self._update_confidence(analysis.success)

        trigger = self.adaptation_trigger(analysis)
        if trigger is None:
            return None
        adaptation = self.generate_adaptation(analysis, trigger)
        self.adaptations.put_nowait(adaptation)
        return adaptation

    def _record_patterns(self, analysis: InteractionRecord) -> None:
        now = self._clock()
        for pattern in analysis.patterns:
            key = f"{pattern.type}:{analysis.context.domain}"
            entry = self.patterns.setdefault(key, {"type": pattern.type, "count": 0})
            entry["count"] += 1
            entry["last_seen"] = now
            entry["confidence"] = pattern.confidence

    def _strategy(self, ctx: InteractionContext) -> dict[str, Any]:
        key = strategy_key(ctx.domain, ctx.page_type, ctx.behavior_profile)
        return self.strategies.setdefault(
            key,
            {
                "domain": ctx.domain,
                "page_type": ctx.page_type,
                "behavior_profile": ctx.behavior_profile,
                "successes": 0,
                "failures": 0,
                "best_quality": None,
                "best_configuration": None,
                "seen_errors": [],
            },
        )

    def _update_successful_patterns(self, analysis: InteractionRecord) -> None:
        ctx = analysis.context
        strategy = self._strategy(ctx)
        strategy["successes"] += 1

        quality = analysis.metrics.data_quality
        if strategy["best_quality"] is None or quality > strategy["best_quality"]:
            strategy["best_quality"] = quality
            strategy["best_configuration"] = {
                "behavior_profile": ctx.behavior_profile,
                "proxy_country": ctx.proxy_country,
                "response_time_ms": analysis.metrics.response_time_ms,
                "actions": list(ctx.previous_actions),
                "selector_overrides": dict(ctx.selector_overrides),
            }

        self.models["timing"].learn(analysis)
        self.models["behavior"].learn(analysis)
        self.models["extraction"].learn(analysis)

    def failure_cause(self, analysis: InteractionRecord) -> tuple[str, float]:
        metrics = analysis.metrics
        if metrics.detections:
            return "detection", 0.9
        if metrics.errors:
            return "error", 0.8
        if metrics.response_time_ms > TIMEOUT_CAUSE_MS:
            return "timeout", 0.7
        return "unknown", 0.3

    def _analyze_failure(self, analysis: InteractionRecord) -> None:
        strategy = self._strategy(analysis.context)
        strategy["failures"] += 1
        for error_type in analysis.metrics.errors:
            if error_type not in strategy["seen_errors"]:
                strategy["seen_errors"].append(error_type)

        cause, confidence = self.failure_cause(analysis)
        if cause == "detection":
            self.models["detection"].learn(analysis)

        similar = self.find_similar_successful(analysis.context)
        if similar:
            differences = self.extract_differences(analysis, similar[0])
            self._learn_from_differences(differences)

        logger.info(
            "Failure analysed",
            extra={
                "session_id": analysis.session_id,
                "target_url": analysis.context.url,
                "error_type": cause,
                "confidence": confidence,
            },
        )

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    def calculate_similarity(self, a: InteractionContext, b: InteractionContext) -> float:
        w = self.similarity_weights
        total = sum(w.values())
        if total <= 0:
            return 0.0

        score = 0.0
        if a.domain == b.domain:
            score += w.get("domain", 0.0)
        if a.page_type == b.page_type:
            score += w.get("page_type", 0.0)
        hours = _hour_distance(a.time_of_day, b.time_of_day)
        if hours < 2:
            score += w.get("time_of_day", 0.0) * (1 - hours / 2)
        if a.previous_actions and b.previous_actions:
            common = len(set(a.previous_actions) & set(b.previous_actions))
            longest = max(len(a.previous_actions), len(b.previous_actions))
            score += w.get("actions", 0.0) * common / longest
        if a.behavior_profile == b.behavior_profile:
            score += w.get("behavior_profile", 0.0)
        return score / total

    def find_similar_successful(self, context: InteractionContext) -> list[InteractionRecord]:
        scored = [
            (self.calculate_similarity(context, record.context), index, record)
            for index, record in enumerate(self.memory.iter_successful())
        ]
        matches = [item for item in scored if item[0] > self.similarity_threshold]
        # Most similar first, newest first among equals
        matches.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in matches[:SIMILAR_LIMIT]]

    def extract_differences(
        self, failed: InteractionRecord, successful: InteractionRecord
    ) -> dict[str, dict[str, Any]]:
        f, s = failed.context, successful.context
        diffs: dict[str, dict[str, Any]] = {}
        if _hour_distance(f.time_of_day, s.time_of_day) > 2:
            diffs["timing"] = {"failed_hour": f.time_of_day, "success_hour": s.time_of_day}
        if f.behavior_profile != s.behavior_profile:
            diffs["behavior"] = {"failed": f.behavior_profile, "success": s.behavior_profile}
        if f.proxy_country != s.proxy_country:
            diffs["proxy"] = {"failed": f.proxy_country, "success": s.proxy_country}
        if f.previous_actions != s.previous_actions:
            diffs["actions"] = {"failed": list(f.previous_actions), "success": list(s.previous_actions)}
        if failed.metrics.response_time_ms > successful.metrics.response_time_ms * 1.5:
            diffs["performance"] = {
                "failed_ms": failed.metrics.response_time_ms,
                "success_ms": successful.metrics.response_time_ms,
            }
        return diffs

    def _learn_from_differences(self, diffs: dict[str, dict[str, Any]]) -> None:
        if "timing" in diffs:
            self.models["timing"].learn_difference(
                diffs["timing"]["failed_hour"], diffs["timing"]["success_hour"], 0.8
            )
        if "behavior" in diffs:
            self.models["behavior"].learn_difference(
                diffs["behavior"]["failed"], diffs["behavior"]["success"]
            )
        if "proxy" in diffs:
            failed_country = diffs["proxy"]["failed"] or "unknown"
            success_country = diffs["proxy"]["success"] or "unknown"
            self.proxy_preferences[failed_country] = self.proxy_preferences.get(failed_country, 0) - 1
            self.proxy_preferences[success_country] = self.proxy_preferences.get(success_country, 0) + 1
        if "actions" in diffs and diffs["actions"]["success"]:
            key = "action_sequence:" + "->".join(diffs["actions"]["success"])
            entry = self.patterns.setdefault(key, {"type": "action_sequence", "count": 0})
            entry["count"] += 1
            entry["last_seen"] = self._clock()
            entry["confidence"] = 0.7

    def find_successful_resolution(self, error_types: tuple[str, ...]) -> dict | None:
        """Best configuration of a strategy that succeeded after hitting *error_types*."""
        candidates = []
        for key, strategy in self.strategies.items():
            if not strategy["successes"] or not strategy["best_configuration"]:
                continue
            if not set(error_types) <= set(strategy["seen_errors"]):
                continue
            rate = strategy["successes"] / (strategy["successes"] + strategy["failures"])
            candidates.append((-rate, key, strategy))
        if not candidates:
            return None
        _, key, best = min(candidates)
        return {
            "strategy": key,
            "configuration": best["best_configuration"],
            "success_rate": best["successes"] / (best["successes"] + best["failures"]),
        }

    # ------------------------------------------------------------------
    # Confidence and adaptation
    # ------------------------------------------------------------------

    def _update_confidence(self, success: bool) -> None:
        if success:
            self.confidence = min(1.0, self.confidence * 1.1)
        else:
            self.confidence = max(0.1, self.confidence * 0.9)
        self.confidence *= self.confidence_decay

    def adaptation_trigger(self, analysis: InteractionRecord) -> str | None:
        """Name of the first condition calling for an adaptation, if any."""
        if self.confidence < self.adaptation_threshold:
            return "low_confidence"
        recent = self.memory.recent_failures(self._clock(), self.recent_failure_window_seconds)
        if recent > self.recent_failure_limit:
            return "recent_failures"
        if analysis.metrics.detections:
            return "detection"
        if self.models["performance"].check_degradation():
            return "performance_degradation"
        if self.pattern_shift() > self.pattern_shift_cutoff:
            return "pattern_shift"
        return None

    def check_adaptation_need(self, analysis: InteractionRecord) -> bool:
        return self.adaptation_trigger(analysis) is not None

    def pattern_shift(self) -> float:
        """KL divergence of the last hour's pattern types against the last day's."""
        now = self._clock()
        recent: dict[str, int] = {}
        historical: dict[str, int] = {}
        for entry in self.patterns.values():
            seen = entry.get("last_seen", 0)
            if seen > now - RECENT_PATTERN_SECONDS:
                recent[entry["type"]] = recent.get(entry["type"], 0) + 1
            elif seen < now - HISTORICAL_PATTERN_SECONDS:
                historical[entry["type"]] = historical.get(entry["type"], 0) + 1
        if not recent or not historical:
            return 0.0

        r_total = sum(recent.values())
        h_total = sum(historical.values())
        divergence = 0.0
        for type_, count in recent.items():
            if type_ not in historical:
                continue
            p = count / r_total
            q = historical[type_] / h_total
            divergence += p * math.log(p / q)
        return abs(divergence)

    def generate_adaptation(self, analysis: InteractionRecord, trigger: str = "manual") -> Adaptation:
        merged: dict[tuple[str, str], Recommendation] = {}
        for model in self.models.values():
            for rec in model.recommend(analysis):
                # First model to suggest a (type, action) wins
                merged.setdefault(rec.key, rec)

        ranked = sorted(merged.values(), key=lambda r: (r.priority, r.confidence), reverse=True)

        if len(ranked) > 1 and self._rng.random() < self.exploration_rate:
            # Promote a non-greedy option; the greedy one drops to its slot
            j = self._rng.randint(1, len(ranked) - 1)
            ranked[0], ranked[j] = replace(ranked[j], exploration=True), ranked[0]

        top = ranked[:3]
        base = sum(r.confidence for r in top) / len(top) if top else 0.5
        adaptation = Adaptation(
            trigger=trigger,
            recommendations=tuple(ranked),
            confidence=base * self.confidence,
            domain=analysis.context.domain,
            timestamp=self._clock(),
        )
        self.adaptations_applied.append(adaptation)
        self.metrics["adaptations_generated"] += 1
        logger.info(
            "Adaptation generated (%s) with %d recommendations",
            trigger,
            len(ranked),
            extra={"session_id": analysis.session_id, "confidence": adaptation.confidence},
        )
        return adaptation

    # ------------------------------------------------------------------
    # Periodic maintenance and persistence
    # ------------------------------------------------------------------

    async def periodic_update(self) -> None:
        for name, model in self.models.items():
            try:
                model.periodic_update()
            except Exception:
                logger.exception("Periodic update failed for %s model", name)

        self.clean_old_memory()

        if self.strategies:
            improving = sum(1 for s in self.strategies.values() if s["successes"] > s["failures"])
            self.metrics["learning_progress"] = improving / len(self.strategies)

        if self.store is not None:
            await self.persist()

    def clean_old_memory(self) -> None:
        cutoff = self._clock() - PATTERN_MAX_AGE_SECONDS
        stale = [k for k, v in self.patterns.items() if v.get("last_seen", 0) < cutoff]
        for key in stale:
            del self.patterns[key]
        self.detector.trim()

    def snapshot(self) -> dict[str, Any]:
        return {
            "timestamp": self._clock(),
            "models": {name: model.serialize() for name, model in self.models.items()},
            "patterns": {k: dict(v) for k, v in self.patterns.items()},
            "detector": self.detector.serialize(),
            "strategies": {
                k: {**v, "seen_errors": list(v["seen_errors"])} for k, v in self.strategies.items()
            },
            "proxy_preferences": dict(self.proxy_preferences),
            "confidence": self.confidence,
            "metrics": dict(self.metrics),
        }

    def restore(self, snapshot: dict[str, Any]) -> None:
        for name, state in snapshot.get("models", {}).items():
            model = self.models.get(name)
            if model is None:
                logger.warning("Ignoring snapshot state for unknown model %s", name)
                continue
            model.deserialize(state)
        self.patterns = {k: dict(v) for k, v in snapshot.get("patterns", {}).items()}
        self.detector.deserialize(snapshot.get("detector", {}))
        self.strategies = {k: dict(v) for k, v in snapshot.get("strategies", {}).items()}
        self.proxy_preferences = dict(snapshot.get("proxy_preferences", {}))
        self.confidence = float(snapshot.get("confidence", 1.0))
        self.metrics.update(snapshot.get("metrics", {}))

    async def persist(self) -> str | None:
        if self.store is None:
            return None
        path = await self.store.save(self.snapshot())
        self.metrics["snapshots_saved"] += 1
        return path

    async def load(self) -> bool:
        """Resume from the latest stored snapshot.  False when none exists."""
        if self.store is None:
            return False
        snapshot = await self.store.load_latest()
        if snapshot is None:
            logger.info("No learning snapshot found; starting fresh")
            return False
        self.restore(snapshot)
        logger.info("Learning state restored from snapshot taken at %s", snapshot.get("timestamp"))
        return True

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "confidence": round(self.confidence, 4),
            "risk": round(self.risk, 4),
            "successful_memory": len(self.memory.successful),
            "failed_memory": len(self.memory.failed),
            "patterns": len(self.patterns),
            "strategies": len(self.strategies),
            "adaptations_applied": len(self.adaptations_applied),
            "pending_interactions": self.inbox.qsize(),
        }
