"""
abuse_gate/services/config_resolver.py — Per-worker limits and global settings
Merge precedence for a worker config:
    stored override  >  named worker default  >  hard-coded fallback
Overrides are validated before acceptance; an invalid stored override is
ignored in favour of the defaults. Configs are immutable snapshots and are
cached for a few minutes so each decision does not cost a store read.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError

from abuse_gate.core.errors import ConfigUnavailable, ConfigValidationError, StoreError
from abuse_gate.core.logging import log_config_change
from abuse_gate.core.records import RecordStore
from abuse_gate.models import (
    ConfigChangeEntry,
    ConfigSource,
    GlobalSettings,
    PenaltySchedule,
    RateLimitConfig,
)
from abuse_gate.utils.timezone import Clock, to_epoch_ms, utc_now
from abuse_gate.utils.validators import ValidationReport, validate_config


# ──────────────────────────────────────────────────────────────────────────────
# Defaults
# ──────────────────────────────────────────────────────────────────────────────

DEFAULT_RATE_LIMITS: dict[str, dict[str, Any]] = {
    "faq-answer-generator-worker": {
        "hourly_limit": 20, "daily_limit": 100, "weekly_limit": 500, "monthly_limit": 2000,
        "violation_thresholds": {"soft": 3, "hard": 6, "ban": 12},
    },
    "faq-realtime-assistant-worker": {
        "hourly_limit": 30, "daily_limit": 200, "weekly_limit": 1000, "monthly_limit": 4000,
        "violation_thresholds": {"soft": 3, "hard": 6, "ban": 12},
    },
    "faq-enhancement-worker": {
        "hourly_limit": 15, "daily_limit": 50, "weekly_limit": 250, "monthly_limit": 1000,
        "violation_thresholds": {"soft": 2, "hard": 5, "ban": 10},
    },
    "faq-seo-analyzer-worker": {
        "hourly_limit": 10, "daily_limit": 30, "weekly_limit": 150, "monthly_limit": 600,
        "violation_thresholds": {"soft": 2, "hard": 4, "ban": 8},
    },
    "faq-proxy-fetch": {
        "hourly_limit": 25, "daily_limit": 100, "weekly_limit": 500, "monthly_limit": 2000,
        "violation_thresholds": {"soft": 2, "hard": 4, "ban": 8},
    },
    "url-to-faq-generator-worker": {
        "hourly_limit": 5, "daily_limit": 15, "weekly_limit": 75, "monthly_limit": 300,
        "violation_thresholds": {"soft": 2, "hard": 4, "ban": 8},
    },
}

# Used when the resolver errors and for unknown workers. Deliberately conservative.
FALLBACK_CONFIG: dict[str, Any] = {
    "hourly_limit": 10,
    "daily_limit": 50,
    "weekly_limit": 250,
    "monthly_limit": 1000,
    "violation_thresholds": {"soft": 3, "hard": 6, "ban": 12},
}

# Fields an override may set; everything else in a stored payload is ignored
_OVERRIDABLE = {
    "hourly_limit", "daily_limit", "weekly_limit", "monthly_limit",
    "violation_thresholds", "penalties", "enabled",
}

WORKER_CONFIG_PREFIX = "rate_limit_config"
GLOBAL_SETTINGS_KEY = "rate_limit_global_settings"


def fallback_config(worker: str) -> RateLimitConfig:
    """Built-in conservative config, tagged source=fallback."""
    return RateLimitConfig(worker=worker, source=ConfigSource.FALLBACK, **FALLBACK_CONFIG)


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def merge_config(
    worker: str,
    stored: Optional[dict[str, Any]],
    defaults: Optional[dict[str, Any]] = None,
) -> RateLimitConfig:
    """
    Build the effective config for `worker`.
    A stored override that fails validation is discarded (logged) and the
    defaults are used instead.
    """
    base = _merge_dicts(FALLBACK_CONFIG, defaults or {})
    base_config = RateLimitConfig(worker=worker, source=ConfigSource.DEFAULT, **base)

    # Disabled overrides are ignored
    if not stored or stored.get("enabled") is False:
        return base_config

    override = {k: v for k, v in stored.items() if k in _OVERRIDABLE}
    candidate = _merge_dicts(base, override)
    report = validate_config(candidate)
    if not report.valid:
        logger.warning(f"Ignoring invalid stored config for {worker}: {report.errors}")
        return base_config

    try:
        return RateLimitConfig(
            worker=worker,
            source=ConfigSource.CUSTOM,
            version=int(stored.get("version", 1)),
            last_updated=stored.get("last_updated"),
            updated_by=stored.get("updated_by"),
            **candidate,
        )
    except (ValidationError, TypeError, ValueError) as exc:
        logger.warning(f"Ignoring unparseable stored config for {worker}: {exc}")
        return base_config


def check_config(worker: str, payload: dict[str, Any]) -> ValidationReport:
    """Validate a proposed override as it would be merged."""
    base = _merge_dicts(FALLBACK_CONFIG, DEFAULT_RATE_LIMITS.get(worker, {}))
    override = {k: v for k, v in payload.items() if k in _OVERRIDABLE}
    report = validate_config(_merge_dicts(base, override))
    if "penalties" in override:
        try:
            PenaltySchedule.model_validate(override["penalties"])
        except ValidationError:
            report.errors.append("Penalty durations must be positive and strictly increasing")
            report.valid = False
    return report


# ──────────────────────────────────────────────────────────────────────────────
# Change log (audit collaborator)
# ──────────────────────────────────────────────────────────────────────────────

class ConfigChangeLog:
    """Writes config_log:{epoch_ms}:{target} entries. Best effort."""

    def __init__(self, records: RecordStore, clock: Clock = utc_now, ttl_seconds: int = 90 * 86400) -> None:
        self._records = records
        self._clock = clock
        self._ttl = ttl_seconds

    async def log(self, target: str, action: str, data: dict[str, Any], updated_by: str) -> None:
        now = self._clock()
        entry = ConfigChangeEntry(
            timestamp=now, target=target, action=action, data=data, updated_by=updated_by,
        )
        log_config_change(target, action, updated_by, data.get("version"))
        try:
            await self._records.put_model(
                f"config_log:{to_epoch_ms(now)}:{target}", entry, ttl_seconds=self._ttl,
            )
        except StoreError as exc:
            logger.warning(f"Failed to log configuration change: {exc}")


# ──────────────────────────────────────────────────────────────────────────────
# Resolver
# ──────────────────────────────────────────────────────────────────────────────

class ConfigResolver:
    def __init__(
        self,
        records: RecordStore,
        change_log: ConfigChangeLog,
        clock: Clock = utc_now,
        cache_ttl_seconds: int = 300,
        record_ttl_seconds: int = 365 * 86400,
    ) -> None:
        self._records = records
        self._change_log = change_log
        self._clock = clock
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._record_ttl = record_ttl_seconds
        self._worker_cache: dict[str, tuple[RateLimitConfig, datetime]] = {}
        self._global_cache: Optional[tuple[GlobalSettings, datetime]] = None

    def _fresh(self, fetched_at: datetime) -> bool:
        return self._clock() - fetched_at < self._cache_ttl

    def invalidate(self, worker: Optional[str] = None) -> None:
        if worker is None:
            self._worker_cache.clear()
            self._global_cache = None
        else:
            self._worker_cache.pop(worker, None)

    # ── Load ──────────────────────────────────────────────────────────────────

    async def load_worker_config(self, worker: str) -> RateLimitConfig:
        """
        Effective config for `worker`, from cache when fresh.
        Raises ConfigUnavailable when the store cannot be read.
        """
        cached = self._worker_cache.get(worker)
        if cached and self._fresh(cached[1]):
            return cached[0]

        try:
            stored = await self._records.get_json(f"{WORKER_CONFIG_PREFIX}:{worker}")
        except StoreError as exc:
            raise ConfigUnavailable(f"cannot load config for {worker}: {exc}") from exc

        config = merge_config(worker, stored, DEFAULT_RATE_LIMITS.get(worker))
        self._worker_cache[worker] = (config, self._clock())
        return config

    async def load_global_settings(self) -> GlobalSettings:
        """Global flags; store failures fall back to defaults (everything on)."""
        if self._global_cache and self._fresh(self._global_cache[1]):
            return self._global_cache[0]

        try:
            stored = await self._records.get_json(GLOBAL_SETTINGS_KEY)
        except StoreError as exc:
            logger.warning(f"Failed to load global settings, using defaults: {exc}")
            return GlobalSettings(source=ConfigSource.FALLBACK)

        settings_obj = GlobalSettings()
        if stored:
            try:
                settings_obj = GlobalSettings.model_validate({**stored, "source": ConfigSource.CUSTOM})
            except ValidationError as exc:
                logger.warning(f"Ignoring malformed global settings: {exc.error_count()} error(s)")
        self._global_cache = (settings_obj, self._clock())
        return settings_obj

    async def get_all_worker_configs(self) -> dict[str, RateLimitConfig]:
        configs = {}
        for worker in DEFAULT_RATE_LIMITS:
            try:
                configs[worker] = await self.load_worker_config(worker)
            except ConfigUnavailable:
                configs[worker] = fallback_config(worker)
        return configs

    # ── Save ──────────────────────────────────────────────────────────────────

    async def save_worker_config(
        self,
        worker: str,
        payload: dict[str, Any],
        updated_by: str = "admin",
    ) -> RateLimitConfig:
        """
        Validate and persist an override. Raises ConfigValidationError on a bad
        payload and StoreError when the write fails.
        """
        report = check_config(worker, payload)
        if not report.valid:
            raise ConfigValidationError(report.errors)

        key = f"{WORKER_CONFIG_PREFIX}:{worker}"
        previous = await self._records.get_json(key) or {}
        record = {k: v for k, v in payload.items() if k in _OVERRIDABLE}
        record.update({
            "last_updated": self._clock().isoformat(),
            "updated_by": updated_by,
            "version": int(previous.get("version", 0)) + 1,
        })
        await self._records.put_json(key, record, ttl_seconds=self._record_ttl)
        await self._change_log.log(worker, "worker_config_updated", record, updated_by)

        self.invalidate(worker)
        return merge_config(worker, record, DEFAULT_RATE_LIMITS.get(worker))

    async def reset_worker_config(self, worker: str, updated_by: str = "admin") -> RateLimitConfig:
        await self._records.delete(f"{WORKER_CONFIG_PREFIX}:{worker}")
        await self._change_log.log(worker, "worker_config_reset", {"reset_to": "defaults"}, updated_by)
        self.invalidate(worker)
        return merge_config(worker, None, DEFAULT_RATE_LIMITS.get(worker))

    async def save_global_settings(
        self,
        payload: dict[str, Any],
        updated_by: str = "admin",
    ) -> GlobalSettings:
        previous = await self._records.get_json(GLOBAL_SETTINGS_KEY) or {}
        allowed = set(GlobalSettings.model_fields) - {"source", "version", "last_updated", "updated_by"}
        record = {**{k: v for k, v in previous.items() if k in allowed},
                  **{k: v for k, v in payload.items() if k in allowed}}
        record.update({
            "last_updated": self._clock().isoformat(),
            "updated_by": updated_by,
            "version": int(previous.get("version", 0)) + 1,
        })
        # Validate before writing
        settings_obj = GlobalSettings.model_validate({**record, "source": ConfigSource.CUSTOM})
        await self._records.put_json(GLOBAL_SETTINGS_KEY, record, ttl_seconds=self._record_ttl)
        await self._change_log.log("global", "global_settings_updated", record, updated_by)
        self._global_cache = None
        return settings_obj
