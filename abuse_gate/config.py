"""
abuse_gate/config.py — Pydantic BaseSettings configuration
Process-level knobs for the admission gate: store backend, write-coalescing
cadence, cache bounds, retention periods and identity resolution.
Per-worker limits are NOT here; they come from the config resolver.
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ────────────────────────────────────────────────────────────
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 8000

    # ── Authentication (admin + commit endpoints) ─────────────────────────────
    admin_api_key: str = "change-me-immediately"

    # ── Backing key-value store ───────────────────────────────────────────────
    # memory:// for a single process, redis://host:6379/0 for shared state
    store_url: str = "memory://"

    # ── Write-coalescing buffer ───────────────────────────────────────────────
    write_coalescing: bool = True
    flush_interval_seconds: float = 5.0
    flush_batch_size: int = 50
    # Floor TTL for flushed counter keys (2h); longer windows keep their own
    buffer_ttl_seconds: int = 7200

    # ── Read-through usage cache ──────────────────────────────────────────────
    usage_cache_ttl_seconds: int = 60
    usage_cache_max_entries: int = 10_000
    usage_cache_evict_fraction: float = 0.2

    # ── Worker config cache ───────────────────────────────────────────────────
    config_cache_ttl_seconds: int = 300

    # ── Retention ─────────────────────────────────────────────────────────────
    violation_retention_seconds: int = 30 * 86400
    violation_summary_cap: int = 50
    config_log_ttl_seconds: int = 90 * 86400
    config_record_ttl_seconds: int = 365 * 86400

    # ── Identity resolution — first header present wins ──────────────────────
    trusted_proxy_headers: list[str] = [
        "CF-Connecting-IP",
        "X-Forwarded-For",
        "X-Real-IP",
    ]
    fallback_identity: str = "127.0.0.1"

    # ── Degraded (sampled) mode ───────────────────────────────────────────────
    sampled_mode: bool = False
    sampled_check_rate: float = 0.1

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("usage_cache_evict_fraction", "sampled_check_rate")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("must be in (0, 1]")
        return v

    @field_validator("flush_batch_size", "usage_cache_max_entries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


@lru_cache()
def get_settings() -> Settings:
    """Return cached Settings instance. Use this everywhere."""
    return Settings()
