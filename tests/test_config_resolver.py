"""
tests/test_config_resolver.py — Per-worker config merge, caching and persistence
"""
from __future__ import annotations

import json

import pytest

from abuse_gate.core.errors import ConfigUnavailable, ConfigValidationError
from abuse_gate.core.records import RecordStore
from abuse_gate.models import ConfigSource
from abuse_gate.services.config_resolver import (
    DEFAULT_RATE_LIMITS,
    FALLBACK_CONFIG,
    ConfigChangeLog,
    ConfigResolver,
    check_config,
    fallback_config,
    merge_config,
)

from conftest import FailingKVStore


def _resolver(kv, clock) -> ConfigResolver:
    return ConfigResolver(
        RecordStore(kv, "config"),
        ConfigChangeLog(RecordStore(kv, "analytics"), clock=clock),
        clock=clock,
    )


def test_named_worker_defaults():
    config = merge_config("url-to-faq-generator-worker", None, DEFAULT_RATE_LIMITS["url-to-faq-generator-worker"])
    assert config.hourly_limit == 5
    assert config.violation_thresholds.ban == 8
    assert config.source == ConfigSource.DEFAULT


def test_unknown_worker_gets_conservative_values():
    config = merge_config("mystery-worker", None)
    assert config.hourly_limit == FALLBACK_CONFIG["hourly_limit"]
    assert config.monthly_limit == FALLBACK_CONFIG["monthly_limit"]


def test_fallback_config_is_tagged():
    assert fallback_config("w").source == ConfigSource.FALLBACK


def test_stored_override_is_merged_over_defaults():
    stored = {"hourly_limit": 2, "violation_thresholds": {"ban": 20}, "version": 3, "updated_by": "ops"}
    config = merge_config("faq-proxy-fetch", stored, DEFAULT_RATE_LIMITS["faq-proxy-fetch"])
    assert config.source == ConfigSource.CUSTOM
    assert config.hourly_limit == 2
    assert config.daily_limit == 100
    assert config.violation_thresholds.soft == 2
    assert config.violation_thresholds.ban == 20
    assert config.version == 3


def test_invalid_or_disabled_override_is_ignored():
    defaults = DEFAULT_RATE_LIMITS["faq-proxy-fetch"]
    assert merge_config("faq-proxy-fetch", {"hourly_limit": 500}, defaults).source == ConfigSource.DEFAULT
    assert merge_config("faq-proxy-fetch", {"hourly_limit": 1, "enabled": False}, defaults).hourly_limit == 25


def test_check_config_rejects_bad_penalties():
    report = check_config("w", {"penalties": {"first_violation": 900, "second_violation": 60}})
    assert not report.valid


@pytest.mark.asyncio
async def test_load_caches_for_five_minutes(kv, clock):
    resolver = _resolver(kv, clock)
    first = await resolver.load_worker_config("faq-proxy-fetch")

    await kv.put("config:rate_limit_config:faq-proxy-fetch", json.dumps({"hourly_limit": 3}))
    assert (await resolver.load_worker_config("faq-proxy-fetch")) is first

    clock.advance(300)
    refreshed = await resolver.load_worker_config("faq-proxy-fetch")
    assert refreshed.hourly_limit == 3


@pytest.mark.asyncio
async def test_store_failure_raises_config_unavailable(clock):
    resolver = _resolver(FailingKVStore(clock=clock, fail_on={"get"}), clock)
    with pytest.raises(ConfigUnavailable):
        await resolver.load_worker_config("faq-proxy-fetch")

    all_configs = await resolver.get_all_worker_configs()
    assert set(all_configs) == set(DEFAULT_RATE_LIMITS)
    assert all(c.source == ConfigSource.FALLBACK for c in all_configs.values())


@pytest.mark.asyncio
async def test_save_validates_versions_and_logs(kv, clock):
    resolver = _resolver(kv, clock)
    with pytest.raises(ConfigValidationError) as info:
        await resolver.save_worker_config("faq-proxy-fetch", {"hourly_limit": 0})
    assert info.value.errors

    saved = await resolver.save_worker_config("faq-proxy-fetch", {"hourly_limit": 4}, "ops")
    assert saved.version == 1
    assert saved.updated_by == "ops"
    clock.advance(1)
    saved = await resolver.save_worker_config("faq-proxy-fetch", {"hourly_limit": 6}, "ops")
    assert saved.version == 2

    assert (await resolver.load_worker_config("faq-proxy-fetch")).hourly_limit == 6
    assert len(await kv.list_keys("analytics:config_log:")) == 2


@pytest.mark.asyncio
async def test_reset_restores_defaults(kv, clock):
    resolver = _resolver(kv, clock)
    await resolver.save_worker_config("faq-proxy-fetch", {"hourly_limit": 4})
    config = await resolver.reset_worker_config("faq-proxy-fetch")
    assert config.hourly_limit == 25
    assert (await resolver.load_worker_config("faq-proxy-fetch")).source == ConfigSource.DEFAULT


@pytest.mark.asyncio
async def test_global_settings_roundtrip(kv, clock):
    resolver = _resolver(kv, clock)
    assert (await resolver.load_global_settings()).enable_rate_limiting

    saved = await resolver.save_global_settings({"enable_rate_limiting": False, "bogus": 1}, "ops")
    assert saved.enable_rate_limiting is False
    assert saved.version == 1

    loaded = await resolver.load_global_settings()
    assert loaded.enable_rate_limiting is False
    assert loaded.source == ConfigSource.CUSTOM


@pytest.mark.asyncio
async def test_global_settings_store_failure_uses_defaults(clock):
    resolver = _resolver(FailingKVStore(clock=clock, fail_on={"get"}), clock)
    loaded = await resolver.load_global_settings()
    assert loaded.enable_rate_limiting
    assert loaded.source == ConfigSource.FALLBACK
