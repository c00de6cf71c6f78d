"""Pattern detectors run on every ingested interaction.

Three detectors share one bounded table each:

- temporal: success rate per (day of week, hour) bucket
- sequence: success rate and duration of the last five actions
- error correlation: which error-type combinations occur together, and
  whether a known-good configuration exists for them
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import MappingProxyType
from typing import Any

from stealth_engine.learning.types import DetectedPattern, InteractionRecord

logger = logging.getLogger(__name__)

TEMPORAL_MIN_SAMPLES = 10
SEQUENCE_MIN_SAMPLES = 5
SEQUENCE_LENGTH = 5
MAX_CORRELATION_CONTEXTS = 100
TRIMMED_CORRELATION_CONTEXTS = 50

# Returns a known-good configuration for the given error types, if any
ResolutionLookup = Callable[[tuple[str, ...]], "dict | None"]


def _pattern(type_: str, confidence: float, recommendation: str, **details: Any) -> DetectedPattern:
    return DetectedPattern(type_, confidence, recommendation, MappingProxyType(details))


class PatternDetector:
    def __init__(self) -> None:
        self.temporal: dict[str, dict[str, int]] = {}
        self.sequences: dict[str, dict[str, float]] = {}
        self.correlations: dict[str, dict[str, Any]] = {}

    def detect(
        self,
        record: InteractionRecord,
        resolution_lookup: ResolutionLookup | None = None,
    ) -> list[DetectedPattern]:
        found: list[DetectedPattern] = []

        temporal = self._temporal(record)
        if temporal:
            found.append(temporal)

        sequence = self._sequence(record)
        if sequence:
            found.append(sequence)

        if record.metrics.errors:
            correlation = self._error_correlation(record, resolution_lookup)
            if correlation:
                found.append(correlation)

        return found

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def _temporal(self, record: InteractionRecord) -> DetectedPattern | None:
        ctx = record.context
        key = f"{ctx.day_of_week}_{ctx.time_of_day}"
        bucket = self.temporal.setdefault(key, {"count": 0, "successes": 0})
        bucket["count"] += 1
        if record.success:
            bucket["successes"] += 1

        if bucket["count"] <= TEMPORAL_MIN_SAMPLES:
            return None

        rate = bucket["successes"] / bucket["count"]
        if rate < 0.5:
            return _pattern(
                "temporal_difficulty", 1 - rate, "avoid_timeframe",
                day_of_week=ctx.day_of_week, hour=ctx.time_of_day, success_rate=rate,
            )
        if rate > 0.9:
            return _pattern(
                "temporal_opportunity", rate, "prefer_timeframe",
                day_of_week=ctx.day_of_week, hour=ctx.time_of_day, success_rate=rate,
            )
        return None

    def _sequence(self, record: InteractionRecord) -> DetectedPattern | None:
        actions = record.context.previous_actions[-SEQUENCE_LENGTH:]
        if not actions:
            return None
        key = "->".join(actions)
        entry = self.sequences.setdefault(
            key, {"occurrences": 0, "successes": 0, "total_duration": 0.0}
        )
        entry["occurrences"] += 1
        if record.success:
            entry["successes"] += 1
        entry["total_duration"] += record.context.session_duration_ms

        if entry["occurrences"] <= SEQUENCE_MIN_SAMPLES:
            return None

        rate = entry["successes"] / entry["occurrences"]
        avg_duration = entry["total_duration"] / entry["occurrences"]
        if rate < 0.3:
            return _pattern(
                "problematic_sequence", 1 - rate, "modify_sequence",
                sequence=key, success_rate=rate,
            )
        if rate > 0.8 and avg_duration < 5000:
            return _pattern(
                "efficient_sequence", rate, "reuse_sequence",
                sequence=key, success_rate=rate, avg_duration_ms=avg_duration,
            )
        return None

    def _error_correlation(
        self,
        record: InteractionRecord,
        resolution_lookup: ResolutionLookup | None,
    ) -> DetectedPattern | None:
        error_types = tuple(sorted(set(record.metrics.errors)))
        key = "|".join(error_types)
        entry = self.correlations.setdefault(key, {"occurrences": 0, "contexts": []})
        entry["occurrences"] += 1
        entry["contexts"].append([record.context.domain, record.context.page_type])

        resolution = resolution_lookup(error_types) if resolution_lookup else None
        if resolution is None:
            return None
        return _pattern(
            "known_error_pattern", 0.9, "apply_known_solution",
            error_types=list(error_types), resolution=resolution,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def trim(self) -> None:
        for entry in self.correlations.values():
            if len(entry["contexts"]) > MAX_CORRELATION_CONTEXTS:
                entry["contexts"] = entry["contexts"][-TRIMMED_CORRELATION_CONTEXTS:]

    def serialize(self) -> dict:
        return {
            "temporal": {k: dict(v) for k, v in self.temporal.items()},
            "sequences": {k: dict(v) for k, v in self.sequences.items()},
            "correlations": {
                k: {"occurrences": v["occurrences"], "contexts": [list(c) for c in v["contexts"]]}
                for k, v in self.correlations.items()
            },
        }

    def deserialize(self, data: dict) -> None:
        self.temporal = {k: dict(v) for k, v in data.get("temporal", {}).items()}
        self.sequences = {k: dict(v) for k, v in data.get("sequences", {}).items()}
        self.correlations = {
            k: {"occurrences": v.get("occurrences", 0), "contexts": [list(c) for c in v.get("contexts", [])]}
            for k, v in data.get("correlations", {}).items()
        }
