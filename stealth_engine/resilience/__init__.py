"""Fault classification, recovery strategies and circuit breaking."""

from stealth_engine.resilience.circuit_breaker import CircuitBreaker, CircuitState
from stealth_engine.resilience.classifier import (
    ErrorCategory,
    ErrorClassification,
    ErrorClassifier,
    Fault,
    StrategyKind,
)
from stealth_engine.resilience.recovery import ErrorRecoveryEngine, RecoveryResult
from stealth_engine.resilience.strategies import RecoveryDeps, build_strategies

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorRecoveryEngine",
    "Fault",
    "RecoveryDeps",
    "RecoveryResult",
    "StrategyKind",
    "build_strategies",
]
