"""
tests/test_engine.py — Decision pipeline, escalation scenarios and failure handling
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from abuse_gate.models import ConfigSource, VerdictReason, ViolationType, Window
from abuse_gate.services.engine import RateLimitEngine, SampledRateLimitEngine, build_engine
from abuse_gate.services.penalties import AUTO_BAN_REASON
from abuse_gate.utils.buckets import bucket_keys

from conftest import FailingKVStore, SlowKVStore, make_settings

IP = "203.0.113.7"
WORKER = "url-to-faq-generator-worker"  # hourly limit 5


async def _commit_n(engine, n, identity=IP, worker=WORKER):
    for _ in range(n):
        await engine.commit(identity, worker)


# ──────────────────────────────────────────────────────────────────────────────
# Admission and counting
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fresh_identity_is_admitted_with_usage_and_limits(engine):
    verdict = await engine.evaluate(IP, WORKER)

    assert verdict.allowed
    assert verdict.reason == VerdictReason.WITHIN_LIMITS
    assert verdict.usage == {"hourly": 0, "daily": 0, "weekly": 0, "monthly": 0}
    assert verdict.limits["hourly"] == 5
    assert set(verdict.reset_times) == {"hourly", "daily", "weekly", "monthly"}
    assert verdict.config_source == ConfigSource.DEFAULT
    assert verdict.http_status() == 200


@pytest.mark.asyncio
async def test_evaluate_never_counts(engine, kv):
    for _ in range(20):
        assert (await engine.evaluate(IP, WORKER)).allowed
    await engine.cache.flush()
    assert await kv.list_keys("ratelimits:usage:") == []


@pytest.mark.asyncio
async def test_commit_counts_every_window(engine, kv, clock):
    await _commit_n(engine, 3)
    assert (await engine.evaluate(IP, WORKER)).usage == {"hourly": 3, "daily": 3, "weekly": 3, "monthly": 3}

    await engine.cache.flush()
    for key in bucket_keys(IP, WORKER, clock()).values():
        assert await kv.get(f"ratelimits:{key}") == "3"


@pytest.mark.asyncio
async def test_counts_survive_cache_expiry(engine, clock):
    await _commit_n(engine, 2)
    await engine.cache.flush()
    clock.advance(61)
    assert (await engine.evaluate(IP, WORKER)).usage["hourly"] == 2


@pytest.mark.asyncio
async def test_unflushed_counts_are_seen_after_cache_expiry(engine, clock):
    await _commit_n(engine, 2)
    clock.advance(61)
    assert (await engine.evaluate(IP, WORKER)).usage["hourly"] == 2


@pytest.mark.asyncio
async def test_unbuffered_mode_writes_through(kv, clock):
    engine = build_engine(make_settings(write_coalescing=False), kv, clock=clock)
    await _commit_n(engine, 2)
    key = bucket_keys(IP, WORKER, clock())[Window.DAILY]
    assert await kv.get(f"ratelimits:{key}") == "2"
    assert engine.cache.pending_writes == 0


@pytest.mark.asyncio
async def test_hour_rollover_resets_hourly_only(engine, clock):
    await _commit_n(engine, 5)
    clock.advance(minutes=30)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.allowed
    assert verdict.usage["hourly"] == 0
    assert verdict.usage["daily"] == 5


# ──────────────────────────────────────────────────────────────────────────────
# Limit breach and escalation
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hourly_breach_blocks_for_five_minutes(engine, clock):
    for _ in range(5):
        assert (await engine.evaluate(IP, WORKER)).allowed
        await engine.commit(IP, WORKER)

    denied = await engine.evaluate(IP, WORKER)
    assert not denied.allowed
    assert denied.reason == VerdictReason.RATE_LIMIT_EXCEEDED
    assert denied.exceeded_window == Window.HOURLY
    assert denied.retry_after_seconds == 300
    assert denied.block_expires_at == clock() + timedelta(seconds=300)
    assert denied.http_status() == 429
    assert denied.headers() == {"Retry-After": "300"}

    clock.advance(60)
    blocked = await engine.evaluate(IP, WORKER)
    assert blocked.reason == VerdictReason.TEMPORARILY_BLOCKED
    assert 0 < blocked.retry_after_seconds <= 300
    assert blocked.retry_after_seconds == 240


@pytest.mark.asyncio
async def test_first_breached_window_is_reported(engine, clock):
    # 15/day: fill the day across three hours, 5 per hour
    for _ in range(3):
        await _commit_n(engine, 5)
        clock.advance(hours=1)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.RATE_LIMIT_EXCEEDED
    assert verdict.exceeded_window == Window.DAILY


@pytest.mark.asyncio
async def test_breach_records_violation_with_context(engine):
    await _commit_n(engine, 5)
    await engine.evaluate(IP, WORKER, {"user_agent": "curl/8", "country": "DE"})

    history = await engine.ledger.history(IP)
    assert len(history) == 1
    assert history[0].type == ViolationType.RATE_LIMIT_EXCEEDED
    assert history[0].context["country"] == "DE"
    assert history[0].context["exceeded_window"] == "hourly"


@pytest.mark.asyncio
async def test_block_expiry_restores_admission_when_usage_allows(engine, clock):
    await _commit_n(engine, 5)
    assert not (await engine.evaluate(IP, WORKER)).allowed
    clock.advance(minutes=31)  # past the block and into the next hour
    assert (await engine.evaluate(IP, WORKER)).allowed


@pytest.mark.asyncio
async def test_repeat_violations_escalate_to_ban(engine, clock):
    await engine.resolver.save_worker_config("w", {
        "hourly_limit": 1, "daily_limit": 100, "weekly_limit": 100, "monthly_limit": 100,
        "violation_thresholds": {"soft": 1, "hard": 2, "ban": 4},
    })
    await engine.commit(IP, "w")

    durations = []
    for _ in range(4):
        verdict = await engine.evaluate(IP, "w")
        assert verdict.reason == VerdictReason.RATE_LIMIT_EXCEEDED
        durations.append(verdict.retry_after_seconds)
        assert (await engine.clear_block(IP)).success
        clock.advance(1)

    assert durations == [300, 1800, 7200, 86400]

    banned = await engine.evaluate(IP, "w")
    assert banned.reason == VerdictReason.BLACKLISTED
    assert banned.http_status() == 403
    entry = await engine.deny_list.check(IP)
    assert entry.reason == AUTO_BAN_REASON
    assert entry.added_by == "system"


@pytest.mark.asyncio
async def test_old_violations_do_not_escalate(engine, clock):
    await _commit_n(engine, 5)
    await engine.evaluate(IP, WORKER)
    clock.advance(hours=25)

    await _commit_n(engine, 5)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.retry_after_seconds == 300


# ──────────────────────────────────────────────────────────────────────────────
# Lists and blocks
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deny_list_beats_allow_list(engine):
    await engine.add_to_allow_list(IP, "partner")
    await engine.add_to_deny_list(IP, "abuse")

    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.BLACKLISTED
    assert verdict.retry_after_seconds is None
    assert verdict.headers() == {}

    summary = await engine.ledger.summary(IP)
    assert summary.violations[-1].type == ViolationType.BLACKLIST_ACCESS


@pytest.mark.asyncio
async def test_allow_list_skips_usage(engine):
    await engine.add_to_allow_list(IP)
    await _commit_n(engine, 50)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.allowed
    assert verdict.reason == VerdictReason.WHITELISTED
    assert verdict.usage is None


@pytest.mark.asyncio
async def test_blocked_attempts_are_recorded(engine):
    await _commit_n(engine, 5)
    await engine.evaluate(IP, WORKER)
    await engine.evaluate(IP, WORKER)

    summary = await engine.ledger.summary(IP)
    assert [v.type for v in summary.violations] == [
        ViolationType.RATE_LIMIT_EXCEEDED,
        ViolationType.BLOCKED_ACCESS_ATTEMPT,
    ]


@pytest.mark.asyncio
async def test_removing_from_deny_list_restores_access(engine):
    await engine.add_to_deny_list(IP)
    assert not (await engine.evaluate(IP, WORKER)).allowed
    result = await engine.remove_from_deny_list(IP)
    assert result.success
    assert (await engine.evaluate(IP, WORKER)).allowed


# ──────────────────────────────────────────────────────────────────────────────
# Global switches
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_global_disable_short_circuits(engine):
    await engine.add_to_deny_list(IP)
    await engine.resolver.save_global_settings({"enable_rate_limiting": False})

    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.allowed
    assert verdict.reason == VerdictReason.RATE_LIMITING_DISABLED


@pytest.mark.asyncio
async def test_list_flags_disable_their_steps(engine):
    await engine.add_to_deny_list(IP)
    await engine.resolver.save_global_settings({"enable_ip_blacklist": False})
    assert (await engine.evaluate(IP, WORKER)).reason == VerdictReason.WITHIN_LIMITS


@pytest.mark.asyncio
async def test_violation_tracking_flag(engine):
    await engine.resolver.save_global_settings({"enable_violation_tracking": False})
    await _commit_n(engine, 5)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.RATE_LIMIT_EXCEEDED
    assert (await engine.ledger.summary(IP)).total_count == 0


# ──────────────────────────────────────────────────────────────────────────────
# Failure handling
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_store_outage_fails_open(clock):
    kv = FailingKVStore(clock=clock, fail_on={"get", "put"})
    engine = build_engine(make_settings(), kv, clock=clock)

    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.allowed
    assert verdict.reason == VerdictReason.ERROR_FALLBACK
    assert verdict.error
    assert verdict.config_source == ConfigSource.FALLBACK


@pytest.mark.asyncio
async def test_usage_read_failure_fails_open(clock):
    kv = FailingKVStore(clock=clock, fail_on={"get"}, prefix="ratelimits:usage")
    engine = build_engine(make_settings(), kv, clock=clock)
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.ERROR_FALLBACK
    assert verdict.config_source == ConfigSource.DEFAULT


@pytest.mark.asyncio
async def test_malformed_block_record_is_no_block(engine, kv):
    await kv.put(f"ratelimits:block:{IP}", "{{garbage")
    assert (await engine.evaluate(IP, WORKER)).reason == VerdictReason.WITHIN_LIMITS


@pytest.mark.asyncio
async def test_commit_failure_is_swallowed(clock):
    kv = FailingKVStore(clock=clock, fail_on={"get", "put"})
    engine = build_engine(make_settings(write_coalescing=False), kv, clock=clock)
    await engine.commit(IP, WORKER)


@pytest.mark.asyncio
async def test_penalty_write_failure_still_denies(clock):
    kv = FailingKVStore(clock=clock, fail_on={"put"}, prefix="ratelimits:block")
    engine = build_engine(make_settings(), kv, clock=clock)
    await _commit_n(engine, 5)

    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.RATE_LIMIT_EXCEEDED
    assert verdict.retry_after_seconds == 300


@pytest.mark.asyncio
async def test_admin_failure_returns_result(clock):
    kv = FailingKVStore(clock=clock, fail_on={"put"})
    engine = build_engine(make_settings(), kv, clock=clock)
    result = await engine.add_to_deny_list(IP)
    assert not result.success
    assert result.error


@pytest.mark.asyncio
async def test_garbage_identity_is_sanitised(engine):
    verdict = await engine.evaluate("bad identity\n", "")
    assert verdict.identity == "unknown"
    assert verdict.worker == "unknown-worker"


# ──────────────────────────────────────────────────────────────────────────────
# Concurrency and sampled mode
# ──────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_commits_with_warm_cache_are_exact(engine):
    await engine.evaluate(IP, WORKER)
    await asyncio.gather(*(engine.commit(IP, WORKER) for _ in range(10)))
    assert (await engine.usage_for(IP, WORKER))["monthly"] == 10


@pytest.mark.asyncio
async def test_concurrent_cold_commits_in_one_process_are_exact(clock):
    kv = SlowKVStore(clock=clock, read_delay=0.01)
    engine = build_engine(make_settings(), kv, clock=clock)

    # Every commit misses the cache and suspends on the same store read
    await asyncio.gather(*(engine.commit(IP, WORKER) for _ in range(10)))
    await engine.cache.flush()

    hourly = bucket_keys(IP, WORKER, clock())[Window.HOURLY]
    assert await kv.get(f"ratelimits:{hourly}") == "10"


@pytest.mark.asyncio
async def test_racing_instances_undercount_by_less_than_the_racers(clock):
    kv = SlowKVStore(clock=clock, read_delay=0.01)
    instances = [build_engine(make_settings(), kv, clock=clock) for _ in range(3)]

    await asyncio.gather(*(e.commit(IP, WORKER) for e in instances))
    for e in instances:
        await e.cache.flush()

    # Each instance read 0 and wrote 1: accepted read-then-write undercount
    hourly = bucket_keys(IP, WORKER, clock())[Window.HOURLY]
    stored = int(await kv.get(f"ratelimits:{hourly}"))
    assert stored == 1
    assert len(instances) - stored < len(instances)  # lost fewer than the racing writers


@pytest.mark.asyncio
async def test_second_instance_overshoots_within_cache_ttl_plus_flush_interval(kv, clock):
    first = build_engine(make_settings(), kv, clock=clock)
    second = build_engine(make_settings(), kv, clock=clock)

    # Unflushed commits on the first instance are invisible to the second
    await _commit_n(first, 5)
    verdict = await second.evaluate(IP, WORKER)
    assert verdict.allowed
    assert verdict.usage["hourly"] == 0

    # Flushed, but the second instance still trusts its cached read
    await first.cache.flush()
    clock.advance(59)
    assert (await second.evaluate(IP, WORKER)).allowed

    clock.advance(1)
    verdict = await second.evaluate(IP, WORKER)
    assert not verdict.allowed
    assert verdict.reason == VerdictReason.RATE_LIMIT_EXCEEDED
    assert verdict.usage["hourly"] == 5


@pytest.mark.asyncio
async def test_sampled_mode_skips_usage_reads(kv, clock):
    settings = make_settings(sampled_mode=True)
    engine = build_engine(settings, kv, clock=clock)
    assert isinstance(engine, SampledRateLimitEngine)

    engine._rng = lambda: 0.99
    verdict = await engine.evaluate(IP, WORKER)
    assert verdict.reason == VerdictReason.SAMPLED_SKIP

    engine._rng = lambda: 0.01
    assert (await engine.evaluate(IP, WORKER)).reason == VerdictReason.WITHIN_LIMITS


@pytest.mark.asyncio
async def test_sampled_mode_still_enforces_lists(kv, clock):
    engine = build_engine(make_settings(sampled_mode=True), kv, clock=clock)
    engine._rng = lambda: 0.99
    await engine.add_to_deny_list(IP)
    assert (await engine.evaluate(IP, WORKER)).reason == VerdictReason.BLACKLISTED


def test_default_build_is_exact_engine(settings, kv, clock):
    engine = build_engine(settings, kv, clock=clock)
    assert type(engine) is RateLimitEngine
