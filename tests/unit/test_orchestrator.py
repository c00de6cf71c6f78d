"""Unit tests for the session orchestrator, driven by an in-memory browser."""

from __future__ import annotations

import asyncio
import random

import pytest

from stealth_engine.config.domain_policies import DomainPolicy
from stealth_engine.learning.types import Adaptation, Recommendation
from stealth_engine.middleware.error_handler import (
    CircuitOpenError,
    DetectionError,
    NavigationError,
    PoolExhaustedError,
    RecoveryExhaustedError,
    UnknownDataTypeError,
)
from stealth_engine.resilience.recovery import ErrorRecoveryEngine
from stealth_engine.resilience.strategies import RecoveryDeps
from stealth_engine.services.orchestrator import SessionOrchestrator
from stealth_engine.services.session import CollectOptions
from tests.conftest import (
    FakeBrowser,
    FakeCaptchaSolver,
    GatedSleep,
    listing_snapshot,
    make_interaction,
    page_snapshot,
    wait_for,
)

URL = "https://market.test/listings/1"

CAPTCHA_PAGE = (
    "<html><body><p>Please verify you are human</p>"
    '<div class="g-recaptcha" data-sitekey="site-key-123"></div></body></html>'
)


@pytest.fixture
def make_orchestrator(pool, recovery, learning, extractor, fingerprints, sleep):
    def build(browser, **kwargs) -> SessionOrchestrator:
        kwargs.setdefault("recovery", recovery)
        return SessionOrchestrator(
            pool=pool,
            browser=browser,
            learning=learning,
            extractor=extractor,
            fingerprints=fingerprints,
            sleep=sleep,
            **kwargs,
        )

    return build


def _pending(learning) -> int:
    return learning.get_metrics()["pending_interactions"]


class TestCollect:
    @pytest.mark.asyncio
    async def test_happy_path(self, make_orchestrator, learning, pool, sleep):
        browser = FakeBrowser([listing_snapshot()])
        orchestrator = make_orchestrator(browser)

        result = await orchestrator.collect(URL)

        assert [r.get("price") for r in result.records] == [120000.0]
        assert result.metadata.attempts == 1
        assert result.metadata.pattern_used == "Z-pattern"
        assert pool.get(result.metadata.proxy_id).success_count == 1
        assert len(browser.sessions) == 1
        assert browser.sessions[0][1] is not None
        assert browser.navigations == [("handle-0", URL, 30000)]
        assert browser.closed == ["handle-0"]
        # Default policy floor of 1500 ms before navigating
        assert sleep.calls[0] >= 1.5
        assert _pending(learning) == 1

        metrics = orchestrator.get_metrics()
        assert metrics["orchestrator"]["sessions_succeeded"] == 1
        assert metrics["orchestrator"]["records_collected"] == 1
        assert metrics["orchestrator"]["active_sessions"] == 0
        assert set(metrics) == {"orchestrator", "pool", "circuit", "recovery", "learning", "extraction"}

    @pytest.mark.asyncio
    async def test_result_dict(self, make_orchestrator):
        result = await make_orchestrator(FakeBrowser([listing_snapshot()])).collect(URL)
        data = result.to_dict()
        assert data["records"][0]["price"] == 120000.0
        assert set(data["metadata"]) == {
            "confidence", "pattern_used", "elements_processed", "attempts",
            "session_id", "proxy_id", "duration_ms",
        }

    @pytest.mark.asyncio
    async def test_outcome_reaches_learning(self, make_orchestrator, learning):
        await make_orchestrator(FakeBrowser([listing_snapshot()])).collect(URL)
        await learning.process_pending()
        assert learning.metrics["successful_interactions"] == 1

    @pytest.mark.asyncio
    async def test_domain_policy_selects_country(self, make_orchestrator):
        policies = {"market.test": DomainPolicy(country="GB", behavior_profile="fast")}
        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]), policies=policies)
        result = await orchestrator.collect("https://www.shop.market.test/listings/1")
        assert result.metadata.proxy_id == "gb-1"


class TestRecovery:
    @pytest.mark.asyncio
    async def test_timeout_then_success_keeps_session(self, make_orchestrator, recovery, learning):
        browser = FakeBrowser([NavigationError("slow", code="ETIMEDOUT"), listing_snapshot()])
        result = await make_orchestrator(browser).collect(URL)

        assert result.metadata.attempts == 2
        assert len(browser.navigations) == 2
        assert len(browser.sessions) == 1
        assert recovery.get_metrics()["successful_recoveries"] == 1
        assert _pending(learning) == 2

    @pytest.mark.asyncio
    async def test_ban_rotates_identity_and_restarts(self, make_orchestrator, pool):
        browser = FakeBrowser([DetectionError(status=403), listing_snapshot()])
        result = await make_orchestrator(browser).collect(URL)

        assert result.metadata.attempts == 2
        assert len(browser.sessions) == 2
        assert browser.closed == ["handle-0", "handle-1"]
        assert pool.get_stats()["blocked"] == 1
        assert pool.get_health(result.metadata.proxy_id).blocked_until is None

    @pytest.mark.asyncio
    async def test_captcha_token_is_injected(self, make_orchestrator, pool, fingerprints, sleep):
        solver = FakeCaptchaSolver()
        recovery = ErrorRecoveryEngine(
            RecoveryDeps(
                pool=pool,
                fingerprints=fingerprints,
                captcha_solver=solver,
                sleep=sleep,
                rng=random.Random(5),
            )
        )
        browser = FakeBrowser([page_snapshot(CAPTCHA_PAGE, url=URL), listing_snapshot()])
        result = await make_orchestrator(browser, recovery=recovery).collect(URL)

        assert browser.tokens == ["solved-token"]
        assert solver.challenges[0].sitekey == "site-key-123"
        assert len(browser.sessions) == 1
        assert result.metadata.attempts == 2
        assert recovery.suspicion_level == 1

    @pytest.mark.asyncio
    async def test_attempt_limit(self, make_orchestrator, learning):
        browser = FakeBrowser([NavigationError("slow", code="ETIMEDOUT")])
        orchestrator = make_orchestrator(browser)

        with pytest.raises(NavigationError):
            await orchestrator.collect(URL, CollectOptions(max_attempts=2))

        assert len(browser.navigations) == 2
        assert browser.closed == ["handle-0"]
        assert orchestrator.get_metrics()["orchestrator"]["sessions_failed"] == 1
        assert _pending(learning) == 2

    @pytest.mark.asyncio
    async def test_exhausted_recovery_is_fatal(self, make_orchestrator, learning):
        browser = FakeBrowser([listing_snapshot(texts=("nothing here",))])
        orchestrator = make_orchestrator(browser)

        with pytest.raises(RecoveryExhaustedError) as exc_info:
            await orchestrator.collect(URL)

        assert exc_info.value.classification.type == "selector_not_found"
        assert len(browser.navigations) == 1
        assert browser.closed == ["handle-0"]
        assert _pending(learning) == 1


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_unknown_data_type(self, make_orchestrator):
        browser = FakeBrowser([listing_snapshot()])
        with pytest.raises(UnknownDataTypeError):
            await make_orchestrator(browser).collect(URL, CollectOptions(data_type="reviews"))
        assert browser.sessions == []

    @pytest.mark.asyncio
    async def test_pool_exhausted(self, make_orchestrator):
        browser = FakeBrowser([listing_snapshot()])
        with pytest.raises(PoolExhaustedError):
            await make_orchestrator(browser).collect(URL, CollectOptions(proxy_type="mobile"))
        assert browser.sessions == []

    @pytest.mark.asyncio
    async def test_open_circuit(self, make_orchestrator, recovery, learning):
        for _ in range(5):
            recovery.breaker.record_failure()
        browser = FakeBrowser([listing_snapshot()])
        orchestrator = make_orchestrator(browser)

        with pytest.raises(CircuitOpenError) as exc_info:
            await orchestrator.collect(URL)

        assert exc_info.value.details["retry_after"] > 0
        assert browser.navigations == []
        assert _pending(learning) == 1
        assert orchestrator.get_metrics()["orchestrator"]["sessions_failed"] == 1


class _HangingBrowser(FakeBrowser):
    def __init__(self) -> None:
        super().__init__([listing_snapshot()])
        self.entered = asyncio.Event()

    async def navigate(self, handle, url, *, timeout_ms, wait_until="domcontentloaded"):
        self.entered.set()
        await asyncio.Event().wait()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_reports_and_closes(self, make_orchestrator, learning):
        browser = _HangingBrowser()
        orchestrator = make_orchestrator(browser)

        task = asyncio.create_task(orchestrator.collect(URL))
        await asyncio.wait_for(browser.entered.wait(), timeout=1)
        assert [s["target_url"] for s in orchestrator.active_sessions()] == [URL]

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert browser.closed == ["handle-0"]
        assert orchestrator.active_sessions() == []
        assert orchestrator.get_metrics()["orchestrator"]["sessions_aborted"] == 1
        assert _pending(learning) == 1

    @pytest.mark.asyncio
    async def test_abort_during_recovery_reports_once(self, make_orchestrator, learning, pool, fingerprints):
        recovery_sleep = GatedSleep()
        recovery = ErrorRecoveryEngine(
            RecoveryDeps(pool=pool, fingerprints=fingerprints, sleep=recovery_sleep, rng=random.Random(5))
        )
        browser = FakeBrowser([NavigationError("slow", code="ETIMEDOUT")])
        orchestrator = make_orchestrator(browser, recovery=recovery)

        task = asyncio.create_task(orchestrator.collect(URL))
        await wait_for(lambda: len(recovery_sleep.gates) == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        records = [learning.inbox.get_nowait() for _ in range(learning.inbox.qsize())]
        assert len(records) == 1
        assert records[0].metrics.errors == ("timeout",)
        assert orchestrator.get_metrics()["orchestrator"]["sessions_aborted"] == 1
        assert browser.closed == ["handle-0"]


class TestAdaptations:
    @staticmethod
    def _adaptation(*recs: Recommendation) -> Adaptation:
        return Adaptation(trigger="detection", recommendations=recs, confidence=0.8, domain="market.test")

    @pytest.mark.asyncio
    async def test_delay_floor_applies_to_next_session(self, make_orchestrator, sleep):
        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]))
        orchestrator.apply_adaptation(
            self._adaptation(Recommendation("timing", "adjust_delays", 4000.0, 0.8, 5))
        )
        assert orchestrator.tuning_for("market.test").min_delay_ms == 4000

        await orchestrator.collect(URL)
        assert sleep.calls[0] >= 4.0

    def test_increase_stealth(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]))
        orchestrator.tuning_for("market.test").last_proxy_id = "us-1"
        value = {"enhance_behavior": True, "slow_down": True, "rotate_identity": True}
        entries = orchestrator.apply_adaptation(
            self._adaptation(Recommendation("detection", "increase_stealth", value, 0.9, 10))
        )

        tuning = orchestrator.tuning_for("market.test")
        assert tuning.behavior_profile == "cautious"
        assert tuning.throttle_factor == 1.5
        assert tuning.avoid_proxy_ids == {"us-1"}
        assert entries[0]["applied"] is True
        assert entries[0]["trigger"] == "detection"

    @pytest.mark.asyncio
    async def test_avoided_proxy_is_not_reused(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]))
        first = await orchestrator.collect(URL)
        orchestrator.apply_adaptation(
            self._adaptation(
                Recommendation("detection", "increase_stealth", {"rotate_identity": True}, 0.9, 10)
            )
        )
        second = await orchestrator.collect(URL)
        assert second.metadata.proxy_id != first.metadata.proxy_id

    def test_other_recommendations(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]))
        entries = orchestrator.apply_adaptation(
            self._adaptation(
                Recommendation("behavior", "switch_profile", "cautious", 0.7, 8),
                Recommendation("extraction", "use_adaptive_selector", {".price": ".amount"}, 0.7, 6),
                Recommendation("performance", "optimize_resources", {"increase_timeouts": True}, 0.6, 4),
                Recommendation("timing", "increase_delays", 2.0, 0.6, 7),
                Recommendation("timing", "teleport", 1, 0.1, 1),
            )
        )
        tuning = orchestrator.tuning_for("market.test")
        assert tuning.behavior_profile == "cautious"
        assert tuning.selector_overrides == {".price": ".amount"}
        assert tuning.navigation_timeout_ms == 45000
        assert tuning.min_delay_ms == 3000
        assert [e["applied"] for e in entries] == [True, True, True, True, False]
        assert len(orchestrator.audit_log) == 5
        assert orchestrator.get_metrics()["orchestrator"]["adaptations_applied"] == 4

    @pytest.mark.asyncio
    async def test_pending_adaptations_are_drained(self, make_orchestrator, learning):
        learning.submit(make_interaction(success=True, detections=("captcha",)))
        produced = await learning.process_pending()
        assert len(produced) == 1

        orchestrator = make_orchestrator(FakeBrowser([listing_snapshot()]))
        entries = orchestrator.apply_pending_adaptations()
        assert len(entries) == len(produced[0].recommendations)
        assert learning.drain_adaptations() == []
