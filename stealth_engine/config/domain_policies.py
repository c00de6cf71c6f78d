"""Domain policy models and YAML loader.

Provides typed Pydantic models for per-domain collection policies
and a loader function that parses the YAML config into those models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class DomainPolicy(BaseModel):
    """Pacing and identity preferences for a single domain."""

    min_delay_ms: int = Field(default=1500, ge=0)
    max_delay_ms: int = Field(default=4000, ge=0)
    page_type: str = "listing"
    proxy_type: str = Field(default="residential", pattern="^(residential|datacenter|mobile)$")
    country: str | None = None
    behavior_profile: str = Field(
        default="natural",
        pattern="^(natural|cautious|ultra_conservative|fast)$",
    )

    @model_validator(mode="after")
    def _check_delay_range(self) -> DomainPolicy:
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError("max_delay_ms must be >= min_delay_ms")
        return self


_DEFAULT_POLICY = DomainPolicy()


def load_domain_policies(yaml_path: str) -> dict[str, DomainPolicy]:
    """Parse a domain policies YAML file into typed DomainPolicy objects.

    Args:
        yaml_path: Path to the YAML configuration file.

    Returns:
        A dict mapping domain names (and "default") to DomainPolicy instances.
        If the file is not found, returns just the built-in default policy.
    """
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Domain policies file not found at %s, using built-in defaults", yaml_path)
        return {"default": _DEFAULT_POLICY}

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse domain policies YAML at %s: %s", yaml_path, exc)
        return {"default": _DEFAULT_POLICY}

    if not isinstance(raw, dict) or not isinstance(raw.get("domains"), dict):
        logger.warning("Domain policies YAML missing 'domains' key, using built-in defaults")
        return {"default": _DEFAULT_POLICY}

    policies: dict[str, DomainPolicy] = {}
    for domain, config in raw["domains"].items():
        try:
            policies[domain] = DomainPolicy.model_validate(config or {})
        except ValidationError as exc:
            logger.error("Invalid policy for domain '%s': %s, skipping", domain, exc)

    # Ensure a default policy always exists
    if "default" not in policies:
        policies["default"] = _DEFAULT_POLICY

    return policies


def policy_for(policies: dict[str, DomainPolicy], domain: str) -> DomainPolicy:
    """Resolve the policy for *domain*, matching parent domains before the default."""
    host = domain.lower()
    while host:
        if host in policies:
            return policies[host]
        if "." not in host:
            break
        host = host.split(".", 1)[1]
    return policies.get("default", _DEFAULT_POLICY)
