"""Browser automation contract, fingerprints and behavior profiles."""

from stealth_engine.browser.behavior import (
    ESCALATION_ORDER,
    MOST_CONSERVATIVE,
    PROFILES,
    BehaviorProfile,
    escalate,
    get_profile,
)
from stealth_engine.browser.engine import BrowserEngine, PageSnapshot, Viewport, VisibleElement
from stealth_engine.browser.fingerprint import FingerprintGenerator, FingerprintProfile

__all__ = [
    "ESCALATION_ORDER",
    "MOST_CONSERVATIVE",
    "PROFILES",
    "BehaviorProfile",
    "BrowserEngine",
    "FingerprintGenerator",
    "FingerprintProfile",
    "PageSnapshot",
    "Viewport",
    "VisibleElement",
    "escalate",
    "get_profile",
]
