"""
Environment-driven settings for the admin analytics service.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel

from .errors import ConfigurationError


class DatabaseConfig(BaseModel):
    url: Optional[str] = None


class MetricsConfig(BaseModel):
    timezone: str = "UTC"
    top_ip_limit: int = 50
    user_chunk_size: int = 500


class LeadsConfig(BaseModel):
    raw_event_limit: int = 5000


class GeoConfig(BaseModel):
    enable: bool = True
    base_url: str = "https://ipwho.is"
    timeout_seconds: float = 2.5
    user_agent: str = "admin-analytics-metrics"
    max_workers: int = 4
    cache_max_entries: int = 10_000
    cache_ttl_seconds: float = 0.0
    """0 keeps entries until they are evicted by size."""


class AnalyticsConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    metrics: MetricsConfig = MetricsConfig()
    leads: LeadsConfig = LeadsConfig()
    geo: GeoConfig = GeoConfig()
    log_level: Optional[str] = None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_config() -> AnalyticsConfig:
    cfg = AnalyticsConfig()

    cfg.database = DatabaseConfig(url=os.getenv("ADMIN_ANALYTICS_DATABASE_URL") or None)
    cfg.metrics = MetricsConfig(
        timezone=os.getenv("ADMIN_ANALYTICS_TIMEZONE", cfg.metrics.timezone),
        top_ip_limit=_env_int("ADMIN_ANALYTICS_TOP_IPS", cfg.metrics.top_ip_limit),
        user_chunk_size=_env_int("ADMIN_ANALYTICS_USER_CHUNK_SIZE", cfg.metrics.user_chunk_size),
    )
    cfg.leads = LeadsConfig(
        raw_event_limit=_env_int("ADMIN_ANALYTICS_LEAD_SCAN_LIMIT", cfg.leads.raw_event_limit),
    )
    cfg.geo = GeoConfig(
        enable=_env_bool("GEO_LOOKUP_ENABLE", cfg.geo.enable),
        base_url=os.getenv("GEO_LOOKUP_BASE_URL", cfg.geo.base_url),
        timeout_seconds=_env_float("GEO_LOOKUP_TIMEOUT_SECONDS", cfg.geo.timeout_seconds),
        user_agent=os.getenv("GEO_LOOKUP_USER_AGENT", cfg.geo.user_agent),
        max_workers=_env_int("GEO_LOOKUP_MAX_WORKERS", cfg.geo.max_workers),
        cache_max_entries=_env_int("GEO_CACHE_MAX_ENTRIES", cfg.geo.cache_max_entries),
        cache_ttl_seconds=_env_float("GEO_CACHE_TTL_SECONDS", cfg.geo.cache_ttl_seconds),
    )
    cfg.log_level = os.getenv("ADMIN_ANALYTICS_LOG_LEVEL") or None

    validate_config(cfg)
    return cfg


def validate_config(cfg: AnalyticsConfig) -> None:
    if cfg.metrics.top_ip_limit < 1:
        raise ConfigurationError("ADMIN_ANALYTICS_TOP_IPS must be at least 1.")
    if cfg.metrics.user_chunk_size < 1:
        raise ConfigurationError("ADMIN_ANALYTICS_USER_CHUNK_SIZE must be at least 1.")
    if cfg.leads.raw_event_limit < 1:
        raise ConfigurationError("ADMIN_ANALYTICS_LEAD_SCAN_LIMIT must be at least 1.")
    if cfg.geo.timeout_seconds <= 0:
        raise ConfigurationError("GEO_LOOKUP_TIMEOUT_SECONDS must be positive.")
    if cfg.geo.max_workers < 1:
        raise ConfigurationError("GEO_LOOKUP_MAX_WORKERS must be at least 1.")
    if cfg.geo.cache_max_entries < 1:
        raise ConfigurationError("GEO_CACHE_MAX_ENTRIES must be at least 1.")
    if cfg.geo.cache_ttl_seconds < 0:
        raise ConfigurationError("GEO_CACHE_TTL_SECONDS cannot be negative.")
