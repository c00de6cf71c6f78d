"""Circuit breaker gating new work for a single target scope.

Counts consecutive failures and transitions through closed → open →
half-open states. One instance is shared by every session of the scope, so
all transitions happen under a lock and concurrent failures cannot race
past the open threshold.

State machine:
- Closed → Open: consecutive failure count reaches threshold
- Open → Half-Open: cooldown elapses and the next call is checked
- Half-Open → Closed: probe request succeeds
- Half-Open → Open: probe request fails
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Internal breaker state."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure: float | None = None
    last_state_change: float = field(default_factory=time.monotonic)
    total_failures: int = 0
    total_successes: int = 0
    times_opened: int = 0


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Args:
        failure_threshold: Consecutive failures that trigger the open state.
        cooldown_seconds: Seconds to wait in open state before transitioning to half-open.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: int = 300,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    @property
    def cooldown_seconds(self) -> int:
        return self._cooldown_seconds

    def can_call(self) -> bool:
        """Check whether new work is allowed.

        - Closed: always allowed.
        - Open: allowed only if cooldown has elapsed (transitions to half-open).
        - Half-open: allowed (probe request).
        """
        with self._lock:
            state = self._state

            if state.state == CircuitState.CLOSED:
                return True

            if state.state == CircuitState.OPEN:
                elapsed = time.monotonic() - state.last_state_change
                if elapsed >= self._cooldown_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                    return True
                return False

            # Half-open: allow the probe
            return True

    def record_success(self) -> None:
        """Record a successful interaction.

        Resets the consecutive failure count; in half-open state, closes the circuit.
        """
        with self._lock:
            state = self._state
            state.total_successes += 1
            state.consecutive_failures = 0
            if state.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed interaction.

        In half-open state, transitions back to open.
        In closed state, opens once consecutive failures reach the threshold.
        """
        with self._lock:
            state = self._state
            state.total_failures += 1
            state.consecutive_failures += 1
            state.last_failure = time.monotonic()

            if state.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                state.state == CircuitState.CLOSED
                and state.consecutive_failures >= self._failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def get_state(self) -> CircuitState:
        """Current circuit state, without triggering the cooldown transition."""
        return self._state.state

    def retry_after(self) -> float:
        """Seconds until an open circuit may be probed again, 0 when not open."""
        with self._lock:
            if self._state.state != CircuitState.OPEN:
                return 0.0
            elapsed = time.monotonic() - self._state.last_state_change
            return max(0.0, self._cooldown_seconds - elapsed)

    def get_stats(self) -> dict:
        """Counters for the metrics endpoint."""
        state = self._state
        return {
            "state": state.state.value,
            "consecutive_failures": state.consecutive_failures,
            "total_failures": state.total_failures,
            "total_successes": state.total_successes,
            "times_opened": state.times_opened,
            "failure_threshold": self._failure_threshold,
            "cooldown_seconds": self._cooldown_seconds,
        }

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitBreakerState()

    def _transition(self, new_state: CircuitState) -> None:
        """Move to *new_state*; caller holds the lock."""
        old_state = self._state.state
        self._state.state = new_state
        self._state.last_state_change = time.monotonic()
        if new_state == CircuitState.OPEN:
            self._state.times_opened += 1
        if new_state == CircuitState.CLOSED:
            self._state.consecutive_failures = 0
        logger.info("Circuit breaker %s -> %s", old_state.value, new_state.value)
