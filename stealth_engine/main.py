"""FastAPI application entry point with lifespan management.

Startup: load settings and domain policies, fill the identity pool, launch
the browser, wire recovery, learning and extraction into the orchestrator,
start the learning consumer and the periodic tasks.
Shutdown: stop periodic tasks, persist learning state, close the browser.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stealth_engine.browser.fingerprint import FingerprintGenerator
from stealth_engine.browser.playwright_engine import PlaywrightEngine
from stealth_engine.config.domain_policies import load_domain_policies
from stealth_engine.config.proxy_sources import load_proxy_records, load_proxy_urls
from stealth_engine.config.settings import EngineSettings
from stealth_engine.extractors.extractor import IntelligentExtractor
from stealth_engine.integration.captcha import HttpCaptchaSolver
from stealth_engine.learning.engine import AdaptiveLearningEngine
from stealth_engine.learning.store import FileLearningStore
from stealth_engine.logging_config import configure_logging
from stealth_engine.middleware.error_handler import register_error_handlers
from stealth_engine.proxy.pool import IdentityPool
from stealth_engine.resilience.circuit_breaker import CircuitBreaker
from stealth_engine.resilience.recovery import ErrorRecoveryEngine
from stealth_engine.resilience.strategies import RecoveryDeps
from stealth_engine.routers.collect import create_collect_router
from stealth_engine.routers.health import create_health_router
from stealth_engine.services.orchestrator import SessionOrchestrator
from stealth_engine.services.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

# Shared state for the application, populated during lifespan startup
_state: dict = {}


def build_pool(settings: EngineSettings) -> IdentityPool:
    pool = IdentityPool(
        top_k=settings.pool_top_k,
        rotate_after=settings.pool_rotate_after_requests,
        block_seconds_blocked=settings.pool_block_seconds_blocked,
        block_seconds_failed=settings.pool_block_seconds_failed,
        auto_block_seconds=settings.pool_auto_block_seconds,
        success_rate_floor=settings.pool_success_rate_floor,
        min_samples=settings.pool_min_samples,
        health_staleness_seconds=settings.pool_health_staleness_seconds,
        health_check_batch_size=settings.pool_health_check_batch_size,
        control_endpoints=settings.pool_control_endpoints,
        degraded_latency_ms=settings.pool_degraded_latency_ms,
        geo_distribution=settings.pool_geo_distribution,
    )
    pool.load(load_proxy_records(settings.proxy_list_path))
    pool.load(load_proxy_urls(settings.proxy_urls))
    return pool


def build_learning_engine(settings: EngineSettings) -> AdaptiveLearningEngine:
    store = (
        FileLearningStore(settings.learning_store_path, retention=settings.learning_store_retention)
        if settings.learning_persistence_enabled
        else None
    )
    return AdaptiveLearningEngine(
        store=store,
        success_memory=settings.learning_success_memory,
        failure_memory=settings.learning_failure_memory,
        adaptation_threshold=settings.learning_adaptation_threshold,
        exploration_rate=settings.learning_exploration_rate,
        confidence_decay=settings.learning_confidence_decay,
        recent_failure_window_seconds=settings.learning_recent_failure_window_seconds,
        recent_failure_limit=settings.learning_recent_failure_limit,
        pattern_shift_cutoff=settings.learning_pattern_shift_cutoff,
        similarity_threshold=settings.learning_similarity_threshold,
        similarity_weights=settings.learning_similarity_weights,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings = EngineSettings()

    configure_logging(settings.log_level)
    logger.info("Starting collection engine on port %d", settings.port)

    policies = load_domain_policies(settings.domain_policies_path)
    pool = build_pool(settings)

    browser = PlaywrightEngine(headless=settings.browser_headless)
    await browser.start()

    fingerprints = FingerprintGenerator()

    captcha_solver = None
    if settings.captcha_api_url and settings.captcha_api_key:
        captcha_solver = HttpCaptchaSolver(
            settings.captcha_api_url,
            settings.captcha_api_key,
            timeout_seconds=settings.captcha_timeout_seconds,
            max_attempts=settings.captcha_max_attempts,
            poll_interval_seconds=settings.captcha_poll_interval_seconds,
        )
    else:
        logger.warning("No CAPTCHA service configured; CAPTCHA recovery will fail over")

    recovery = ErrorRecoveryEngine(
        RecoveryDeps(
            pool=pool,
            fingerprints=fingerprints,
            captcha_solver=captcha_solver,
            initial_backoff_ms=settings.recovery_initial_backoff_ms,
            backoff_multiplier=settings.recovery_backoff_multiplier,
            max_backoff_ms=settings.recovery_max_backoff_ms,
            backoff_jitter=settings.recovery_backoff_jitter,
        ),
        breaker=CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            cooldown_seconds=settings.cb_cooldown_seconds,
        ),
        detection_threshold=settings.detection_threshold,
        cooldown_range=(
            settings.detection_cooldown_min_seconds,
            settings.detection_cooldown_max_seconds,
        ),
    )

    learning = build_learning_engine(settings)
    await learning.load()
    learning_task = asyncio.create_task(learning.run(), name="learning-consumer")

    extractor = IntelligentExtractor(
        chunk_size=settings.extraction_chunk_size,
        words_per_minute=settings.extraction_words_per_minute,
        min_chunk_delay_ms=settings.extraction_min_chunk_delay_ms,
        max_chunk_delay_ms=settings.extraction_max_chunk_delay_ms,
    )

    orchestrator = SessionOrchestrator(
        pool=pool,
        browser=browser,
        recovery=recovery,
        learning=learning,
        extractor=extractor,
        fingerprints=fingerprints,
        policies=policies,
        navigation_timeout_ms=settings.navigation_timeout_ms,
        max_attempts=settings.navigation_max_attempts,
    )

    scheduled = [
        PeriodicTask(
            "pool-health-check",
            settings.pool_health_check_interval_seconds,
            pool.run_health_checks,
            run_immediately=True,
        ),
        PeriodicTask(
            "learning-update",
            settings.learning_update_interval_seconds,
            learning.periodic_update,
        ),
    ]
    for task in scheduled:
        task.start()

    # Mount routers
    app.include_router(
        create_health_router(
            orchestrator=orchestrator,
            pool=pool,
            browser=browser,
            scheduled=scheduled,
        )
    )
    app.include_router(create_collect_router(orchestrator=orchestrator))

    _state.update({
        "settings": settings,
        "pool": pool,
        "browser": browser,
        "recovery": recovery,
        "learning": learning,
        "orchestrator": orchestrator,
    })

    logger.info("Collection engine started with %d proxies", pool.get_stats()["total"])

    yield

    # --- Shutdown ---
    logger.info("Shutting down collection engine")

    for task in scheduled:
        await task.stop()

    learning_task.cancel()
    try:
        await learning_task
    except asyncio.CancelledError:
        pass

    await learning.process_pending()
    await learning.persist()

    await browser.shutdown()

    logger.info("Collection engine shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Stealth Collection Engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_error_handlers(app)
    return app


app = create_app()
