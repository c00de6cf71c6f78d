"""Online learning from interaction outcomes."""

from stealth_engine.learning.engine import AdaptiveLearningEngine, strategy_key
from stealth_engine.learning.memory import InteractionMemory
from stealth_engine.learning.models import (
    BehaviorModel,
    DetectionModel,
    ExtractionModel,
    LearningModel,
    PerformanceModel,
    TimingModel,
    default_models,
)
from stealth_engine.learning.patterns import PatternDetector
from stealth_engine.learning.store import FileLearningStore, LearningStore
from stealth_engine.learning.types import (
    Adaptation,
    DetectedPattern,
    InteractionContext,
    InteractionMetrics,
    InteractionRecord,
    Outcome,
    Recommendation,
)

__all__ = [
    "Adaptation",
    "AdaptiveLearningEngine",
    "BehaviorModel",
    "DetectedPattern",
    "DetectionModel",
    "ExtractionModel",
    "FileLearningStore",
    "InteractionContext",
    "InteractionMemory",
    "InteractionMetrics",
    "InteractionRecord",
    "LearningModel",
    "LearningStore",
    "Outcome",
    "PatternDetector",
    "PerformanceModel",
    "Recommendation",
    "TimingModel",
    "default_models",
    "strategy_key",
]
