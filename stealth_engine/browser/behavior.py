"""Human behavior profiles.

A profile bounds the delay between actions and switches interaction
simulation on or off. Profiles are ordered from most to least aggressive so
recovery can escalate one step at a time.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BehaviorProfile:
    """Pacing and interaction settings for one session."""

    name: str
    min_delay_ms: int
    max_delay_ms: int
    mouse_movement: bool
    scroll_pattern: str  # none, linear, reading
    reading_time: bool
    random_pause_probability: float

    def sample_delay(self, rng: random.Random, floor_ms: int = 0) -> float:
        """Delay in ms for the next action, never below *floor_ms*."""
        low = max(self.min_delay_ms, floor_ms)
        high = max(self.max_delay_ms, low)
        delay = rng.uniform(low, high)
        if rng.random() < self.random_pause_probability:
            delay += rng.uniform(high, high * 2)
        return delay


PROFILES: dict[str, BehaviorProfile] = {
    "fast": BehaviorProfile(
        name="fast",
        min_delay_ms=300,
        max_delay_ms=1000,
        mouse_movement=False,
        scroll_pattern="linear",
        reading_time=False,
        random_pause_probability=0.0,
    ),
    "natural": BehaviorProfile(
        name="natural",
        min_delay_ms=1000,
        max_delay_ms=3000,
        mouse_movement=True,
        scroll_pattern="reading",
        reading_time=True,
        random_pause_probability=0.05,
    ),
    "cautious": BehaviorProfile(
        name="cautious",
        min_delay_ms=2000,
        max_delay_ms=5000,
        mouse_movement=True,
        scroll_pattern="reading",
        reading_time=True,
        random_pause_probability=0.1,
    ),
    "ultra_conservative": BehaviorProfile(
        name="ultra_conservative",
        min_delay_ms=5000,
        max_delay_ms=12000,
        mouse_movement=True,
        scroll_pattern="reading",
        reading_time=True,
        random_pause_probability=0.2,
    ),
}

# Least to most conservative
ESCALATION_ORDER: tuple[str, ...] = ("fast", "natural", "cautious", "ultra_conservative")

MOST_CONSERVATIVE = ESCALATION_ORDER[-1]


def get_profile(name: str) -> BehaviorProfile:
    """Return the profile called *name*, falling back to ``natural``."""
    return PROFILES.get(name, PROFILES["natural"])


def escalate(name: str) -> str:
    """Name of the next more conservative profile (saturates at the last)."""
    try:
        index = ESCALATION_ORDER.index(name)
    except ValueError:
        index = ESCALATION_ORDER.index("natural")
    return ESCALATION_ORDER[min(index + 1, len(ESCALATION_ORDER) - 1)]
