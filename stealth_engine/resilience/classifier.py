"""Fault classification.

A raised fault is normalized into a :class:`Fault` and matched against
ordered pattern tables, one per category. Categories are tried in a fixed
order (detection, network, parsing, resource, behavioral) and the first
match wins; an unmatched fault is ``unknown`` with a generic recovery list.

Detection is matched in two passes: message and page indicators across all
detection types first, then status codes. Status 403 and 429 alone are
ambiguous between CAPTCHA walls, rate limits and bans, so an explicit
indicator always takes precedence over a bare status code.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from stealth_engine.middleware.error_handler import (
    CaptchaSolveError,
    DetectionError,
    ExtractionError,
    NavigationError,
)


class ErrorCategory(str, Enum):
    DETECTION = "detection"
    NETWORK = "network"
    PARSING = "parsing"
    RESOURCE = "resource"
    BEHAVIORAL = "behavioral"
    UNKNOWN = "unknown"


class StrategyKind(str, Enum):
    """Recovery strategies, one implementation each."""

    DELAY = "delay"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    ROTATE_PROXY = "rotate_proxy"
    ROTATE_IDENTITY = "rotate_identity"
    ENHANCE_BEHAVIOR = "enhance_behavior"
    ADD_NOISE = "add_noise"
    UPDATE_SELECTORS = "update_selectors"
    ADAPT_PARSING = "adapt_parsing"
    SOLVE_CAPTCHA = "solve_captcha"
    WAIT_LONGER = "wait_longer"
    THROTTLE = "throttle"
    RESTART_SESSION = "restart_session"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Fault normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Fault:
    """Normalized view of a raised error."""

    message: str
    code: str | None = None
    status: int | None = None
    page_content: str | None = None
    selector: str | None = None
    expected_content: str | None = None
    parsing: bool = False
    error_type: str = "Exception"

    @classmethod
    def from_exception(cls, exc: BaseException) -> Fault:
        message = str(exc) or exc.__class__.__name__
        error_type = exc.__class__.__name__

        if isinstance(exc, NavigationError):
            return cls(
                message=message,
                code=exc.code or _code_from_message(message),
                status=exc.status,
                page_content=exc.page_content,
                error_type=error_type,
            )
        if isinstance(exc, ExtractionError):
            return cls(
                message=message,
                selector=exc.selector,
                expected_content=exc.expected_content,
                parsing=True,
                error_type=error_type,
            )
        if isinstance(exc, DetectionError):
            return cls(
                message=message,
                status=exc.details.get("status"),  # type: ignore[arg-type]
                page_content=exc.details.get("page_content"),  # type: ignore[arg-type]
                error_type=error_type,
            )
        if isinstance(exc, CaptchaSolveError):
            # Solver failures stay in the detection category
            return cls(message=f"captcha {message}", error_type=error_type)
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return cls(message=message, code="ETIMEDOUT", error_type=error_type)
        if isinstance(exc, (UnicodeDecodeError, UnicodeEncodeError)):
            return cls(message=f"encoding error: {message}", parsing=True, error_type=error_type)
        if isinstance(exc, MemoryError):
            return cls(message=f"out of memory: {message}", error_type=error_type)
        return cls(message=message, code=_code_from_message(message), error_type=error_type)


def _code_from_message(message: str) -> str | None:
    upper = message.upper()
    for code in ("ETIMEDOUT", "ECONNREFUSED", "ENOTFOUND", "ECONNRESET"):
        if code in upper:
            return code
    if "CERT_" in upper:
        return "CERT_ERROR"
    if "PROXY_" in upper:
        return "PROXY_ERROR"
    return None


# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FaultPattern:
    type: str
    strategies: tuple[StrategyKind, ...]
    indicators: tuple[str, ...] = ()
    messages: tuple[str, ...] = ()
    status_codes: tuple[int, ...] = ()
    code: str | None = None


S = StrategyKind

DETECTION_PATTERNS: tuple[FaultPattern, ...] = (
    FaultPattern(
        type="captcha",
        indicators=("g-recaptcha", "h-captcha", "cf-challenge", "captcha", "robot-check", "human-verification"),
        messages=("please verify you are human", "complete the captcha", "security check", "automated requests detected"),
        strategies=(S.SOLVE_CAPTCHA, S.ROTATE_IDENTITY, S.DELAY, S.ENHANCE_BEHAVIOR, S.FALLBACK),
    ),
    FaultPattern(
        type="rate_limit",
        indicators=("rate-limit", "too-many-requests", "slow-down"),
        messages=("rate limit exceeded", "too many requests", "please slow down", "request limit reached"),
        status_codes=(429, 503),
        strategies=(S.EXPONENTIAL_BACKOFF, S.ROTATE_PROXY, S.THROTTLE, S.ROTATE_IDENTITY, S.ENHANCE_BEHAVIOR, S.FALLBACK),
    ),
    FaultPattern(
        type="banned",
        indicators=("banned", "blocked", "forbidden", "access-denied"),
        messages=("access denied", "ip banned", "forbidden", "blocked due to suspicious activity"),
        status_codes=(403, 401),
        strategies=(S.ROTATE_IDENTITY, S.ENHANCE_BEHAVIOR, S.DELAY, S.FALLBACK),
    ),
    FaultPattern(
        type="behavioral_detection",
        indicators=("unusual-activity", "bot-detection", "automation-detected"),
        messages=("unusual activity detected", "please use a regular browser", "automation tools detected"),
        strategies=(S.ENHANCE_BEHAVIOR, S.ADD_NOISE, S.ROTATE_IDENTITY, S.FALLBACK),
    ),
    FaultPattern(
        type="honeypot",
        indicators=("hidden-field-filled", "trap-link-clicked", "invisible-element-interacted"),
        strategies=(S.RESTART_SESSION, S.ENHANCE_BEHAVIOR, S.ROTATE_IDENTITY, S.FALLBACK),
    ),
)

NETWORK_PATTERNS: tuple[FaultPattern, ...] = (
    FaultPattern(type="timeout", code="ETIMEDOUT", strategies=(S.DELAY, S.WAIT_LONGER, S.ROTATE_PROXY, S.FALLBACK)),
    FaultPattern(type="connection_refused", code="ECONNREFUSED", strategies=(S.EXPONENTIAL_BACKOFF, S.ROTATE_PROXY, S.FALLBACK)),
    FaultPattern(type="dns_failure", code="ENOTFOUND", strategies=(S.DELAY, S.ROTATE_PROXY, S.FALLBACK)),
    FaultPattern(type="tls_error", code="CERT_", strategies=(S.ROTATE_PROXY, S.DELAY, S.FALLBACK)),
    FaultPattern(type="proxy_error", code="PROXY_", strategies=(S.ROTATE_PROXY, S.EXPONENTIAL_BACKOFF, S.FALLBACK)),
)

PARSING_PATTERNS: tuple[FaultPattern, ...] = (
    FaultPattern(
        type="selector_not_found",
        indicators=("no element found", "selector failed"),
        strategies=(S.UPDATE_SELECTORS, S.ADAPT_PARSING, S.FALLBACK),
    ),
    FaultPattern(
        type="unexpected_structure",
        indicators=("unexpected format", "structure changed"),
        strategies=(S.ADAPT_PARSING, S.UPDATE_SELECTORS, S.FALLBACK),
    ),
    FaultPattern(
        type="empty_response",
        indicators=("empty content", "no data"),
        strategies=(S.WAIT_LONGER, S.ADAPT_PARSING, S.UPDATE_SELECTORS, S.FALLBACK),
    ),
    FaultPattern(
        type="encoding_error",
        indicators=("encoding error", "decode failed"),
        strategies=(S.ADAPT_PARSING, S.FALLBACK),
    ),
)

RESOURCE_PATTERNS: tuple[FaultPattern, ...] = (
    FaultPattern(type="memory_exhaustion", indicators=("out of memory", "heap limit"), strategies=(S.RESTART_SESSION, S.THROTTLE, S.DELAY, S.FALLBACK)),
    FaultPattern(type="cpu_overload", indicators=("cpu usage high", "process slow"), strategies=(S.THROTTLE, S.DELAY, S.FALLBACK)),
    FaultPattern(type="disk_space", indicators=("disk full", "no space"), strategies=(S.THROTTLE, S.FALLBACK)),
    FaultPattern(type="browser_crash", indicators=("browser disconnected", "page crashed", "target closed"), strategies=(S.RESTART_SESSION, S.DELAY, S.FALLBACK)),
)

BEHAVIORAL_PATTERNS: tuple[FaultPattern, ...] = (
    FaultPattern(type="too_fast", indicators=("actions too quick", "inhuman speed"), strategies=(S.ENHANCE_BEHAVIOR, S.DELAY, S.FALLBACK)),
    FaultPattern(type="too_consistent", indicators=("pattern detected", "regular intervals"), strategies=(S.ADD_NOISE, S.ENHANCE_BEHAVIOR, S.FALLBACK)),
    FaultPattern(type="suspicious_navigation", indicators=("direct access", "no referrer"), strategies=(S.ENHANCE_BEHAVIOR, S.ROTATE_IDENTITY, S.FALLBACK)),
    FaultPattern(type="missing_interactions", indicators=("no mouse movement", "no scrolling"), strategies=(S.ENHANCE_BEHAVIOR, S.ADD_NOISE, S.FALLBACK)),
)

UNKNOWN_STRATEGIES: tuple[StrategyKind, ...] = (S.DELAY, S.EXPONENTIAL_BACKOFF, S.FALLBACK)

del S


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying one fault; never persisted."""

    category: ErrorCategory
    type: str
    matched_pattern: str | None
    strategies: tuple[StrategyKind, ...]

    @property
    def key(self) -> str:
        return f"{self.category.value}_{self.type}"


class ErrorClassifier:
    """Matches faults against the ordered pattern tables."""

    def classify(self, fault: Fault) -> ErrorClassification:
        return (
            self._match_detection(fault)
            or self._match_network(fault)
            or self._match_parsing(fault)
            or self._match_indicators(ErrorCategory.RESOURCE, RESOURCE_PATTERNS, fault.message)
            or self._match_indicators(ErrorCategory.BEHAVIORAL, BEHAVIORAL_PATTERNS, fault.message)
            or ErrorClassification(
                category=ErrorCategory.UNKNOWN,
                type="generic",
                matched_pattern=None,
                strategies=UNKNOWN_STRATEGIES,
            )
        )

    def _match_detection(self, fault: Fault) -> ErrorClassification | None:
        message = fault.message.lower()
        content = (fault.page_content or "").lower()

        for pattern in DETECTION_PATTERNS:
            for phrase in pattern.messages:
                if phrase in message:
                    return self._result(ErrorCategory.DETECTION, pattern, phrase)
            for indicator in pattern.indicators:
                if indicator in message or (content and indicator in content):
                    return self._result(ErrorCategory.DETECTION, pattern, indicator)

        if fault.status is not None:
            for pattern in DETECTION_PATTERNS:
                if fault.status in pattern.status_codes:
                    return self._result(ErrorCategory.DETECTION, pattern, f"status:{fault.status}")
        return None

    def _match_network(self, fault: Fault) -> ErrorClassification | None:
        if not fault.code:
            return None
        for pattern in NETWORK_PATTERNS:
            if pattern.code and pattern.code in fault.code:
                return self._result(ErrorCategory.NETWORK, pattern, pattern.code)
        return None

    def _match_parsing(self, fault: Fault) -> ErrorClassification | None:
        if not (fault.parsing or fault.selector):
            return None
        matched = self._match_indicators(ErrorCategory.PARSING, PARSING_PATTERNS, fault.message)
        if matched is not None:
            return matched
        if fault.selector:
            # An unrecognized message about a known selector is still a missing selector
            return self._result(ErrorCategory.PARSING, PARSING_PATTERNS[0], None)
        return None

    def _match_indicators(
        self,
        category: ErrorCategory,
        patterns: tuple[FaultPattern, ...],
        message: str,
    ) -> ErrorClassification | None:
        lowered = message.lower()
        for pattern in patterns:
            for indicator in pattern.indicators:
                if indicator in lowered:
                    return self._result(category, pattern, indicator)
        return None

    @staticmethod
    def _result(
        category: ErrorCategory,
        pattern: FaultPattern,
        matched: str | None,
    ) -> ErrorClassification:
        return ErrorClassification(
            category=category,
            type=pattern.type,
            matched_pattern=matched,
            strategies=pattern.strategies,
        )

    @staticmethod
    def pattern_count() -> int:
        return sum(
            len(table)
            for table in (
                DETECTION_PATTERNS,
                NETWORK_PATTERNS,
                PARSING_PATTERNS,
                RESOURCE_PATTERNS,
                BEHAVIORAL_PATTERNS,
            )
        )
