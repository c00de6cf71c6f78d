"""Configuration module: settings, domain policies and proxy sources."""

from stealth_engine.config.domain_policies import DomainPolicy, load_domain_policies, policy_for
from stealth_engine.config.proxy_sources import load_proxy_records, load_proxy_urls
from stealth_engine.config.settings import EngineSettings

__all__ = [
    "DomainPolicy",
    "EngineSettings",
    "load_domain_policies",
    "load_proxy_records",
    "load_proxy_urls",
    "policy_for",
]
