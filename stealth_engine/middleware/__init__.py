"""Middleware package: error hierarchy and exception handlers."""

from stealth_engine.middleware.error_handler import (
    CaptchaSolveError,
    CircuitOpenError,
    CollectorError,
    DetectionError,
    ExtractionError,
    NavigationError,
    PoolExhaustedError,
    RecoveryExhaustedError,
    UnknownDataTypeError,
    ValidationError,
    register_error_handlers,
)

__all__ = [
    "CaptchaSolveError",
    "CircuitOpenError",
    "CollectorError",
    "DetectionError",
    "ExtractionError",
    "NavigationError",
    "PoolExhaustedError",
    "RecoveryExhaustedError",
    "UnknownDataTypeError",
    "ValidationError",
    "register_error_handlers",
]
