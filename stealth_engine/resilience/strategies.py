"""Recovery strategies.

One class per :class:`StrategyKind`. A strategy receives the fault, the
current session context and the attempt number, and reports an outcome
carrying the session fields it wants changed; the recovery engine applies
them to a fresh copy of the context. Strategies hold no state of their own,
so running one twice for the same request is harmless.

A ``CollectorError`` raised inside ``execute`` (an exhausted pool, a failed
CAPTCHA solve) counts as that strategy failing.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup

from stealth_engine.browser.behavior import escalate, get_profile
from stealth_engine.integration.captcha import CaptchaChallenge
from stealth_engine.proxy.types import AcquireCriteria, RotationReason
from stealth_engine.resilience.classifier import (
    ErrorCategory,
    ErrorClassification,
    Fault,
    StrategyKind,
)
from stealth_engine.resilience.selector_search import find_alternative_selectors
from stealth_engine.services.session import domain_of

if TYPE_CHECKING:
    from stealth_engine.browser.engine import PageSnapshot
    from stealth_engine.browser.fingerprint import FingerprintGenerator
    from stealth_engine.integration.captcha import CaptchaSolver
    from stealth_engine.proxy.pool import IdentityPool
    from stealth_engine.services.session import SessionContext

logger = logging.getLogger(__name__)

MAX_NAVIGATION_TIMEOUT_MS = 120_000
MAX_MIN_DELAY_MS = 30_000
MAX_THROTTLE_FACTOR = 8.0


# ---------------------------------------------------------------------------
# Request / outcome / collaborators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecoveryRequest:
    fault: Fault
    context: SessionContext
    attempt: int
    classification: ErrorClassification
    snapshot: PageSnapshot | None = None

    @property
    def html(self) -> str | None:
        if self.snapshot is not None and self.snapshot.html:
            return self.snapshot.html
        return self.fault.page_content


@dataclass(frozen=True)
class StrategyOutcome:
    success: bool
    updates: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))
    reason: str | None = None
    details: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def ok(cls, updates: dict | None = None, **details: object) -> StrategyOutcome:
        return cls(
            success=True,
            updates=MappingProxyType(dict(updates or {})),
            details=MappingProxyType(details),
        )

    @classmethod
    def failed(cls, reason: str) -> StrategyOutcome:
        return cls(success=False, reason=reason)


@dataclass
class RecoveryDeps:
    """Collaborators and tunables shared by every strategy."""

    pool: IdentityPool | None = None
    fingerprints: FingerprintGenerator | None = None
    captcha_solver: CaptchaSolver | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)
    initial_backoff_ms: int = 1000
    backoff_multiplier: float = 1.5
    max_backoff_ms: int = 60000
    backoff_jitter: float = 0.15

    def backoff_ms(self, attempt: int) -> float:
        """Jittered backoff for *attempt* (1-based), capped at the maximum."""
        jitter = self.rng.uniform(-self.backoff_jitter, self.backoff_jitter)
        delay = self.initial_backoff_ms * self.backoff_multiplier ** max(attempt - 1, 0) * (1 + jitter)
        return min(delay, self.max_backoff_ms)


def _rotation_reason(classification: ErrorClassification) -> RotationReason:
    if classification.category == ErrorCategory.DETECTION:
        return RotationReason.BLOCKED
    if classification.category == ErrorCategory.NETWORK:
        return RotationReason.FAILED
    return RotationReason.ERROR_RECOVERY


# ---------------------------------------------------------------------------
# Strategy base
# ---------------------------------------------------------------------------


class RecoveryStrategy(ABC):
    """A single recovery action.

    Subclasses MUST set ``kind`` as a class attribute and implement
    ``execute``.
    """

    kind: StrategyKind

    @abstractmethod
    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        ...


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class DelayStrategy(RecoveryStrategy):
    kind = StrategyKind.DELAY

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        delay_ms = deps.backoff_ms(request.attempt)
        await deps.sleep(delay_ms / 1000)
        floor = min(max(request.context.min_delay_ms, int(delay_ms)), MAX_MIN_DELAY_MS)
        return StrategyOutcome.ok({"min_delay_ms": floor}, delay_ms=round(delay_ms))


class ExponentialBackoffStrategy(RecoveryStrategy):
    kind = StrategyKind.EXPONENTIAL_BACKOFF

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        backoff_ms = min(
            deps.initial_backoff_ms * deps.backoff_multiplier ** request.attempt,
            deps.max_backoff_ms,
        )
        await deps.sleep(backoff_ms / 1000)
        return StrategyOutcome.ok(backoff_ms=round(backoff_ms))


class WaitLongerStrategy(RecoveryStrategy):
    kind = StrategyKind.WAIT_LONGER

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        current = request.context.navigation_timeout_ms
        if current >= MAX_NAVIGATION_TIMEOUT_MS:
            return StrategyOutcome.failed("Navigation timeout already at maximum")
        timeout = min(int(current * 1.5), MAX_NAVIGATION_TIMEOUT_MS)
        return StrategyOutcome.ok({"navigation_timeout_ms": timeout}, navigation_timeout_ms=timeout)


class ThrottleStrategy(RecoveryStrategy):
    kind = StrategyKind.THROTTLE

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        context = request.context
        factor = min(context.throttle_factor * 2, MAX_THROTTLE_FACTOR)
        floor = min(max(context.min_delay_ms * 2, 2000), MAX_MIN_DELAY_MS)
        return StrategyOutcome.ok(
            {"throttle_factor": factor, "min_delay_ms": floor},
            throttle_factor=factor,
        )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class RotateProxyStrategy(RecoveryStrategy):
    kind = StrategyKind.ROTATE_PROXY

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        context = request.context
        if deps.pool is None or context.proxy is None:
            return StrategyOutcome.failed("No identity pool available")

        reason = _rotation_reason(request.classification)
        lease = await deps.pool.rotate(context.proxy.record, reason)
        return StrategyOutcome.ok(
            {"proxy": lease, "restart_required": True},
            previous_proxy=context.proxy.record.id,
            proxy=lease.record.id,
            reason=reason.value,
        )


class RotateIdentityStrategy(RecoveryStrategy):
    kind = StrategyKind.ROTATE_IDENTITY

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        context = request.context
        if deps.pool is None and deps.fingerprints is None:
            return StrategyOutcome.failed("No identity collaborators available")

        updates: dict = {"restart_required": True, "actions": (), "captcha_token": None}
        lease = context.proxy
        if deps.pool is not None:
            if context.proxy is not None:
                lease = await deps.pool.rotate(
                    context.proxy.record, _rotation_reason(request.classification)
                )
            else:
                lease = await deps.pool.acquire(AcquireCriteria(exclude_blocked=True))
            updates["proxy"] = lease

        if deps.fingerprints is not None:
            country = lease.record.country if lease is not None else None
            updates["fingerprint"] = deps.fingerprints.generate(country)

        return StrategyOutcome.ok(updates, proxy=lease.record.id if lease else None)


# ---------------------------------------------------------------------------
# Behavior
# ---------------------------------------------------------------------------


class EnhanceBehaviorStrategy(RecoveryStrategy):
    kind = StrategyKind.ENHANCE_BEHAVIOR

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        context = request.context
        profile = get_profile(escalate(context.behavior_profile))
        return StrategyOutcome.ok(
            {
                "behavior_profile": profile.name,
                "min_delay_ms": max(context.min_delay_ms, profile.min_delay_ms),
            },
            behavior_profile=profile.name,
        )


class AddNoiseStrategy(RecoveryStrategy):
    kind = StrategyKind.ADD_NOISE

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        variance = min(max(request.context.timing_variance + 0.1, 0.3), 0.6)
        return StrategyOutcome.ok({"timing_variance": variance}, timing_variance=variance)


class RestartSessionStrategy(RecoveryStrategy):
    kind = StrategyKind.RESTART_SESSION

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        return StrategyOutcome.ok(
            {"restart_required": True, "actions": (), "captcha_token": None},
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class UpdateSelectorsStrategy(RecoveryStrategy):
    kind = StrategyKind.UPDATE_SELECTORS

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        html = request.html
        failed = request.fault.selector
        if not html:
            return StrategyOutcome.failed("No page content")
        if not failed:
            return StrategyOutcome.failed("No failed selector recorded")

        candidates = find_alternative_selectors(html, failed, request.fault.expected_content)
        if not candidates:
            return StrategyOutcome.failed("No alternative selectors found")

        best = candidates[0]
        return StrategyOutcome.ok(
            {"selector_overrides": (*request.context.selector_overrides, (failed, best.selector))},
            old=failed,
            new=best.selector,
            method=best.method,
            confidence=best.confidence,
        )


_PRICE = re.compile(r"\$[\d,]+(?:\.\d{2})?")


class AdaptParsingStrategy(RecoveryStrategy):
    """Try progressively looser parsing approaches until one finds data."""

    kind = StrategyKind.ADAPT_PARSING

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        html = request.html
        if not html:
            return StrategyOutcome.failed("No page content")

        soup = BeautifulSoup(html, "html.parser")
        text = soup.get_text(" ", strip=True)

        if _PRICE.search(text):
            return StrategyOutcome.ok({"parsing_strategy": "semantic"}, confidence=0.7)

        classes = Counter(cls for el in soup.find_all(class_=True) for cls in el.get("class", []))
        repeating = [cls for cls, count in classes.most_common() if count > 3]
        if repeating:
            return StrategyOutcome.ok(
                {"parsing_strategy": "pattern"},
                pattern=repeating[0],
                confidence=0.6,
            )

        expected = request.fault.expected_content
        if expected and expected.lower() in text.lower():
            return StrategyOutcome.ok({"parsing_strategy": "flexible"}, confidence=0.5)

        return StrategyOutcome.failed("All parsing strategies failed")


# ---------------------------------------------------------------------------
# CAPTCHA
# ---------------------------------------------------------------------------

_CAPTCHA_CLASSES: tuple[tuple[str, str], ...] = (
    ("h-captcha", "hcaptcha"),
    ("cf-turnstile", "turnstile"),
    ("g-recaptcha", "recaptcha"),
)


def find_captcha_challenge(html: str, page_url: str) -> CaptchaChallenge | None:
    """Locate a sitekey-based challenge in *html*."""
    soup = BeautifulSoup(html, "html.parser")
    widget = soup.find(attrs={"data-sitekey": True})
    if widget is None:
        return None
    classes = " ".join(widget.get("class", []))
    captcha_type = next((kind for marker, kind in _CAPTCHA_CLASSES if marker in classes), "recaptcha")
    return CaptchaChallenge(type=captcha_type, page_url=page_url, sitekey=widget["data-sitekey"])


class SolveCaptchaStrategy(RecoveryStrategy):
    kind = StrategyKind.SOLVE_CAPTCHA

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        if deps.captcha_solver is None:
            return StrategyOutcome.failed("No CAPTCHA solver available")
        html = request.html
        if not html:
            return StrategyOutcome.failed("No page content")

        page_url = request.snapshot.url if request.snapshot else request.context.target_url
        challenge = find_captcha_challenge(html, page_url)
        if challenge is None:
            return StrategyOutcome.failed("No CAPTCHA challenge found on page")

        token = await deps.captcha_solver.solve(challenge)
        return StrategyOutcome.ok({"captcha_token": token}, captcha_type=challenge.type)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------


class FallbackStrategy(RecoveryStrategy):
    kind = StrategyKind.FALLBACK

    async def execute(self, request: RecoveryRequest, deps: RecoveryDeps) -> StrategyOutcome:
        context = request.context
        if not context.fallback_urls:
            return StrategyOutcome.failed("No fallback source available")

        next_url, *remaining = context.fallback_urls
        return StrategyOutcome.ok(
            {
                "target_url": next_url,
                "domain": domain_of(next_url),
                "fallback_urls": tuple(remaining),
                "restart_required": True,
            },
            fallback_url=next_url,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

STRATEGY_CLASSES: tuple[type[RecoveryStrategy], ...] = (
    DelayStrategy,
    ExponentialBackoffStrategy,
    RotateProxyStrategy,
    RotateIdentityStrategy,
    EnhanceBehaviorStrategy,
    AddNoiseStrategy,
    UpdateSelectorsStrategy,
    AdaptParsingStrategy,
    SolveCaptchaStrategy,
    WaitLongerStrategy,
    ThrottleStrategy,
    RestartSessionStrategy,
    FallbackStrategy,
)


def build_strategies() -> dict[StrategyKind, RecoveryStrategy]:
    """Instantiate one strategy per kind.

    Raises
    ------
    RuntimeError
        If a ``StrategyKind`` has no implementation or two share a kind.
    """
    registry: dict[StrategyKind, RecoveryStrategy] = {}
    for cls in STRATEGY_CLASSES:
        if cls.kind in registry:
            raise RuntimeError(f"Duplicate recovery strategy for '{cls.kind.value}'")
        registry[cls.kind] = cls()

    missing = set(StrategyKind) - set(registry)
    if missing:
        names = ", ".join(sorted(kind.value for kind in missing))
        raise RuntimeError(f"Recovery strategies not implemented: {names}")
    return registry


# Fail at import time rather than mid-recovery
build_strategies()
