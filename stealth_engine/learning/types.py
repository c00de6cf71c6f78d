"""Learning data types.

Interaction records are immutable snapshots taken when an interaction
completes. Recommendations and adaptations are plain values; they carry
JSON-safe payloads so they can be logged and persisted as-is.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stealth_engine.services.session import SessionContext


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class InteractionContext:
    """The parts of a session the learning models key on."""

    url: str
    domain: str
    page_type: str = "listing"
    behavior_profile: str = "natural"
    proxy_country: str | None = None
    time_of_day: int = 0  # hour, 0-23
    day_of_week: int = 0  # Monday = 0
    session_duration_ms: float = 0.0
    previous_actions: tuple[str, ...] = ()
    selector_overrides: tuple[tuple[str, str], ...] = ()
    user_agent: str | None = None

    @classmethod
    def from_session(cls, context: SessionContext, now: float | None = None) -> InteractionContext:
        now = time.time() if now is None else now
        moment = datetime.fromtimestamp(now)
        return cls(
            url=context.target_url,
            domain=context.domain,
            page_type=context.page_type,
            behavior_profile=context.behavior_profile,
            proxy_country=context.proxy_country,
            time_of_day=moment.hour,
            day_of_week=moment.weekday(),
            session_duration_ms=max(0.0, (now - context.started_at) * 1000),
            previous_actions=context.actions,
            selector_overrides=context.selector_overrides,
            user_agent=context.fingerprint.user_agent if context.fingerprint else None,
        )


@dataclass(frozen=True)
class InteractionMetrics:
    response_time_ms: float = 0.0
    data_quality: float = 0.0
    records_extracted: int = 0
    errors: tuple[str, ...] = ()  # error types
    detections: tuple[str, ...] = ()  # detection indicators that fired
    cpu_usage: float = 0.0
    memory_usage: float = 0.0


@dataclass(frozen=True)
class DetectedPattern:
    type: str
    confidence: float
    recommendation: str
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class InteractionRecord:
    """Immutable snapshot of one completed interaction."""

    session_id: str
    context: InteractionContext
    outcome: Outcome
    metrics: InteractionMetrics = field(default_factory=InteractionMetrics)
    timestamp: float = field(default_factory=time.time)
    patterns: tuple[DetectedPattern, ...] = ()

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass(frozen=True)
class Recommendation:
    """One suggested change; ``value`` is JSON-safe."""

    type: str  # timing, behavior, extraction, detection, performance
    action: str
    value: Any
    confidence: float
    priority: int
    exploration: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.action)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "action": self.action,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "priority": self.priority,
            "exploration": self.exploration,
        }


@dataclass(frozen=True)
class Adaptation:
    """Ranked recommendations produced for one triggering interaction."""

    trigger: str
    recommendations: tuple[Recommendation, ...]
    confidence: float
    domain: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "trigger": self.trigger,
            "domain": self.domain,
            "confidence": round(self.confidence, 4),
            "timestamp": self.timestamp,
            "recommendations": [rec.to_dict() for rec in self.recommendations],
        }
