"""Property tests for the consecutive-failure circuit breaker.

Validates state transitions (closed→open→half-open→closed/open) against a
reference model, open-state rejection, and half-open probe behavior.
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from stealth_engine.resilience.circuit_breaker import CircuitBreaker, CircuitState


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

thresholds = st.integers(min_value=1, max_value=10)

# True = success, False = failure
outcome_sequences = st.lists(st.booleans(), min_size=0, max_size=60)


# ---------------------------------------------------------------------------
# Property 1: Breaker opens exactly when the consecutive failure run hits the threshold
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(threshold=thresholds, outcomes=outcome_sequences)
def test_state_matches_reference_model(threshold: int, outcomes: list[bool]) -> None:
    # Feature: stealth-collection-engine, Property 1: Circuit breaker state transitions
    cb = CircuitBreaker(failure_threshold=threshold, cooldown_seconds=3600)

    is_open = False
    run = 0
    for success in outcomes:
        if success:
            cb.record_success()
            run = 0
        else:
            cb.record_failure()
            run += 1
            if run >= threshold:
                is_open = True

        expected = CircuitState.OPEN if is_open else CircuitState.CLOSED
        assert cb.get_state() == expected
        # Open circuits reject new work until the cooldown elapses
        assert cb.can_call() is (not is_open)

    stats = cb.get_stats()
    assert stats["total_successes"] == sum(outcomes)
    assert stats["total_failures"] == len(outcomes) - sum(outcomes)
    assert stats["times_opened"] == (1 if is_open else 0)


@settings(max_examples=100)
@given(threshold=thresholds)
def test_retry_after_bounded_by_cooldown(threshold: int) -> None:
    # Feature: stealth-collection-engine, Property 1: Circuit breaker state transitions
    cb = CircuitBreaker(failure_threshold=threshold, cooldown_seconds=120)
    assert cb.retry_after() == 0.0

    for _ in range(threshold):
        cb.record_failure()

    assert 0.0 < cb.retry_after() <= 120


# ---------------------------------------------------------------------------
# Property 2: Half-open probe outcome decides the next state
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(threshold=thresholds, probe_succeeds=st.booleans())
def test_half_open_probe(threshold: int, probe_succeeds: bool) -> None:
    # Feature: stealth-collection-engine, Property 2: Half-open probe decides recovery
    cb = CircuitBreaker(failure_threshold=threshold, cooldown_seconds=0)
    for _ in range(threshold):
        cb.record_failure()
    assert cb.get_state() == CircuitState.OPEN

    # Zero cooldown: the next check moves to half-open and admits a probe
    assert cb.can_call() is True
    assert cb.get_state() == CircuitState.HALF_OPEN

    if probe_succeeds:
        cb.record_success()
        assert cb.get_state() == CircuitState.CLOSED
        assert cb.get_stats()["consecutive_failures"] == 0
    else:
        cb.record_failure()
        assert cb.get_state() == CircuitState.OPEN
        assert cb.get_stats()["times_opened"] == 2


@settings(max_examples=50)
@given(threshold=thresholds, outcomes=outcome_sequences)
def test_reset_closes_the_circuit(threshold: int, outcomes: list[bool]) -> None:
    # Feature: stealth-collection-engine, Property 1: Circuit breaker state transitions
    cb = CircuitBreaker(failure_threshold=threshold, cooldown_seconds=3600)
    for success in outcomes:
        cb.record_success() if success else cb.record_failure()

    cb.reset()

    assert cb.get_state() == CircuitState.CLOSED
    assert cb.can_call() is True
    assert cb.get_stats()["total_failures"] == 0
