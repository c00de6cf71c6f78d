"""Pydantic Settings for the collection engine.

All environment variables use the STEALTH_ prefix.
Example: STEALTH_PORT=8001, STEALTH_CB_FAILURE_THRESHOLD=3
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Collection engine configuration validated from environment variables."""

    # Service
    port: int = 8001
    log_level: str = "INFO"

    # Identity pool
    proxy_urls: list[str] = []  # Loaded from env or the proxy list file
    proxy_list_path: str = "stealth_engine/config/proxies.yaml"
    pool_top_k: int = Field(default=5, ge=1)
    pool_rotate_after_requests: int = Field(default=50, ge=1)
    pool_block_seconds_blocked: int = Field(default=3600, ge=1)  # Detection-grade
    pool_block_seconds_failed: int = Field(default=300, ge=1)  # Transient failure
    pool_auto_block_seconds: int = Field(default=1800, ge=1)
    pool_success_rate_floor: float = Field(default=0.5, ge=0.0, le=1.0)
    pool_min_samples: int = Field(default=5, ge=1)
    pool_health_check_interval_seconds: int = Field(default=300, ge=1)
    pool_health_staleness_seconds: int = Field(default=300, ge=0)
    pool_health_check_batch_size: int = Field(default=10, ge=1)
    pool_control_endpoints: list[str] = [
        "https://httpbin.org/status/200",
        "https://www.google.com",
    ]
    pool_degraded_latency_ms: float = Field(default=5000.0, gt=0)
    pool_geo_distribution: dict[str, float] = {
        "US": 0.45,
        "CA": 0.10,
        "GB": 0.15,
        "AU": 0.10,
        "DE": 0.05,
        "FR": 0.05,
        "JP": 0.05,
        "OTHER": 0.05,
    }

    # Circuit breaker
    cb_failure_threshold: int = Field(default=5, ge=1)
    cb_cooldown_seconds: int = Field(default=300, ge=1)

    # Recovery
    recovery_initial_backoff_ms: int = Field(default=1000, ge=0)
    recovery_backoff_multiplier: float = Field(default=1.5, ge=1.0)
    recovery_max_backoff_ms: int = Field(default=60000, ge=0)
    recovery_backoff_jitter: float = Field(default=0.15, ge=0.0, lt=1.0)
    detection_threshold: int = Field(default=5, ge=1)
    detection_cooldown_min_seconds: float = Field(default=30.0, ge=0)
    detection_cooldown_max_seconds: float = Field(default=60.0, ge=0)

    # Learning
    learning_success_memory: int = Field(default=10000, ge=1)
    learning_failure_memory: int = Field(default=5000, ge=1)
    learning_adaptation_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    learning_exploration_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    learning_confidence_decay: float = Field(default=0.99, gt=0.0, le=1.0)
    learning_update_interval_seconds: int = Field(default=60, ge=1)
    learning_recent_failure_window_seconds: int = Field(default=300, ge=1)
    learning_recent_failure_limit: int = Field(default=3, ge=0)
    learning_pattern_shift_cutoff: float = Field(default=0.3, ge=0.0)
    learning_similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    learning_similarity_weights: dict[str, float] = {
        "domain": 0.3,
        "page_type": 0.2,
        "time_of_day": 0.1,
        "actions": 0.2,
        "behavior_profile": 0.2,
    }
    learning_store_path: str = "./learning-data"
    learning_store_retention: int = Field(default=10, ge=1)
    learning_persistence_enabled: bool = True

    # Extraction
    extraction_chunk_size: int = Field(default=10, ge=1)
    extraction_words_per_minute: int = Field(default=250, ge=1)
    extraction_min_chunk_delay_ms: int = Field(default=500, ge=0)
    extraction_max_chunk_delay_ms: int = Field(default=5000, ge=0)

    # Navigation / CAPTCHA
    navigation_timeout_ms: int = Field(default=30000, ge=1000)
    navigation_max_attempts: int = Field(default=3, ge=1)
    captcha_api_url: str | None = None
    captcha_api_key: str | None = None
    captcha_timeout_seconds: float = Field(default=120.0, gt=0)
    captcha_max_attempts: int = Field(default=2, ge=1)
    captcha_poll_interval_seconds: float = Field(default=5.0, gt=0)

    # Browser
    browser_headless: bool = True

    # Domain policies
    domain_policies_path: str = "stealth_engine/config/domain_policies.yaml"

    model_config = {"env_prefix": "STEALTH_"}
