"""
abuse_gate/services/engine.py — Rate limit engine (decision pipeline)
evaluate() runs, in order, each step a possible terminal exit:

    0. global kill switch        enable_rate_limiting=false → ALLOW
    1. deny list                 → DENY BLACKLISTED (permanent, 403)
    2. allow list                → ALLOW, usage not checked
    3. active block              → DENY TEMPORARILY_BLOCKED (429, Retry-After)
    4. usage, hourly→monthly     first breach → penalty + DENY RATE_LIMIT_EXCEEDED
    5. admit                     → ALLOW with usage / limits / reset times

evaluate() never counts. commit() is the only usage mutator and is called
by the protected worker after its work succeeded.

Failure rule, applied in one place: a StoreError while deciding turns into
ALLOW(ERROR_FALLBACK). The gate fails open; nothing is raised to callers.
Side-effect writes made after the outcome is known (violation records,
blocks, bans) are best effort and never change the outcome.
"""
from __future__ import annotations

import random
import time
from typing import Any, Callable, Optional

from loguru import logger

from abuse_gate.clients.kv_store import KVStore
from abuse_gate.config import Settings
from abuse_gate.core.cache_manager import WriteCoalescingCache
from abuse_gate.core.errors import ConfigUnavailable, StoreError
from abuse_gate.core.logging import log_admin_action, log_error, log_verdict, log_violation
from abuse_gate.core.records import RecordStore
from abuse_gate.models import (
    WINDOWS,
    AdminResult,
    GlobalSettings,
    IdentityStatus,
    ListKind,
    RateLimitConfig,
    Verdict,
    VerdictReason,
    ViolationSummary,
    ViolationType,
    Window,
)
from abuse_gate.services.access_lists import AccessList
from abuse_gate.services.block_gate import BlockGate
from abuse_gate.services.config_resolver import ConfigChangeLog, ConfigResolver, fallback_config
from abuse_gate.services.identity import sanitize_identity, sanitize_worker
from abuse_gate.services.penalties import PenaltyEscalator, count_recent, escalate
from abuse_gate.services.usage import UsageCounterStore
from abuse_gate.services.violations import ESCALATION_WINDOW, ViolationLedger
from abuse_gate.utils.buckets import bucket_keys, reset_times
from abuse_gate.utils.timezone import Clock, utc_now


def _by_name(values: dict[Window, Any]) -> dict[str, Any]:
    return {w.value: v for w, v in values.items()}


class RateLimitEngine:
    """Composes lists, blocks, usage, violations and penalties into one verdict."""

    def __init__(
        self,
        allow_list: AccessList,
        deny_list: AccessList,
        blocks: BlockGate,
        usage: UsageCounterStore,
        cache: WriteCoalescingCache,
        ledger: ViolationLedger,
        escalator: PenaltyEscalator,
        resolver: ConfigResolver,
        clock: Clock = utc_now,
        write_coalescing: bool = True,
    ) -> None:
        self.allow_list = allow_list
        self.deny_list = deny_list
        self.blocks = blocks
        self.usage = usage
        self.cache = cache
        self.ledger = ledger
        self.escalator = escalator
        self.resolver = resolver
        self._clock = clock
        self._write_coalescing = write_coalescing

    # ──────────────────────────────────────────────────────────────────────────
    # Admission
    # ──────────────────────────────────────────────────────────────────────────

    async def evaluate(
        self,
        identity: str,
        worker: str,
        request_meta: Optional[dict[str, Any]] = None,
    ) -> Verdict:
        """Decide whether `identity` may call `worker` now. Never raises."""
        started = time.perf_counter()
        identity = sanitize_identity(identity)
        worker = sanitize_worker(worker)
        config: Optional[RateLimitConfig] = None

        try:
            global_settings = await self.resolver.load_global_settings()
            if not global_settings.enable_rate_limiting:
                verdict = Verdict(
                    allowed=True,
                    reason=VerdictReason.RATE_LIMITING_DISABLED,
                    identity=identity,
                    worker=worker,
                )
            else:
                config = await self._resolve_config(worker)
                verdict = await self._decide(identity, worker, config, global_settings, request_meta or {})
        except StoreError as exc:
            verdict = self._fail_open(identity, worker, config, exc)
        except Exception as exc:
            log_error("engine", "evaluate", exc, {"identity": identity, "worker": worker})
            verdict = self._fail_open(identity, worker, config, exc)

        verdict.duration_ms = (time.perf_counter() - started) * 1000
        log_verdict(
            identity,
            worker,
            verdict.allowed,
            verdict.reason.value,
            verdict.duration_ms,
            exceeded_window=verdict.exceeded_window.value if verdict.exceeded_window else None,
            error=verdict.error,
        )
        return verdict

    async def _resolve_config(self, worker: str) -> RateLimitConfig:
        try:
            return await self.resolver.load_worker_config(worker)
        except ConfigUnavailable as exc:
            logger.warning(f"Config unavailable for {worker}, using fallback limits: {exc}")
            return fallback_config(worker)

    def _fail_open(
        self,
        identity: str,
        worker: str,
        config: Optional[RateLimitConfig],
        exc: Exception,
    ) -> Verdict:
        return Verdict(
            allowed=True,
            reason=VerdictReason.ERROR_FALLBACK,
            identity=identity,
            worker=worker,
            error=str(exc) or type(exc).__name__,
            config_source=config.source if config else None,
        )

    def _should_read_usage(self) -> bool:
        """Whether a usage cache miss goes to the store. Always, outside sampled mode."""
        return True

    async def _decide(
        self,
        identity: str,
        worker: str,
        config: RateLimitConfig,
        global_settings: GlobalSettings,
        request_meta: dict[str, Any],
    ) -> Verdict:
        now = self._clock()
        base = {"identity": identity, "worker": worker, "config_source": config.source}

        # Step 1: deny list
        if global_settings.enable_ip_blacklist:
            if await self.deny_list.check(identity) is not None:
                await self._note_violation(
                    identity, ViolationType.BLACKLIST_ACCESS, worker, request_meta, global_settings,
                )
                return Verdict(allowed=False, reason=VerdictReason.BLACKLISTED, **base)

        # Step 2: allow list
        if global_settings.enable_ip_whitelist:
            if await self.allow_list.check(identity) is not None:
                return Verdict(allowed=True, reason=VerdictReason.WHITELISTED, **base)

        # Step 3: active block
        block = await self.blocks.active(identity)
        if block is not None:
            await self._note_violation(
                identity, ViolationType.BLOCKED_ACCESS_ATTEMPT, worker, request_meta, global_settings,
            )
            return Verdict(
                allowed=False,
                reason=VerdictReason.TEMPORARILY_BLOCKED,
                retry_after_seconds=block.remaining_seconds(now),
                block_expires_at=block.expires_at,
                **base,
            )

        # Step 4: usage across all windows
        keys = bucket_keys(identity, worker, now)
        usage = self.cache.get_usage(identity, worker, keys)
        if usage is None:
            if not self._should_read_usage():
                return Verdict(allowed=True, reason=VerdictReason.SAMPLED_SKIP, **base)
            usage = await self._load_usage(identity, worker, keys)

        limits = config.limits()
        resets = reset_times(now)
        for window in WINDOWS:
            if usage[window] >= limits[window]:
                duration, expires_at = await self._penalize(
                    identity, worker, window, usage, config, global_settings, request_meta,
                )
                return Verdict(
                    allowed=False,
                    reason=VerdictReason.RATE_LIMIT_EXCEEDED,
                    usage=_by_name(usage),
                    limits=_by_name(limits),
                    reset_times=_by_name(resets),
                    exceeded_window=window,
                    retry_after_seconds=duration,
                    block_expires_at=expires_at,
                    **base,
                )

        # Step 5: admit (counting happens in commit)
        return Verdict(
            allowed=True,
            reason=VerdictReason.WITHIN_LIMITS,
            usage=_by_name(usage),
            limits=_by_name(limits),
            reset_times=_by_name(resets),
            **base,
        )

    async def _load_usage(self, identity: str, worker: str, keys: dict[Window, str]) -> dict[Window, int]:
        """Store read on cache miss; buffered values overlay what the store returned."""
        stored = await self.usage.get_windows(keys)
        counts = self.cache.overlay(keys, stored)
        self.cache.put_usage(identity, worker, keys, counts)
        return counts

    async def _read_usage(self, identity: str, worker: str, keys: dict[Window, str]) -> dict[Window, int]:
        cached = self.cache.get_usage(identity, worker, keys)
        if cached is not None:
            return cached
        return await self._load_usage(identity, worker, keys)

    # ──────────────────────────────────────────────────────────────────────────
    # Violations and penalties (best effort)
    # ──────────────────────────────────────────────────────────────────────────

    async def _note_violation(
        self,
        identity: str,
        violation_type: ViolationType,
        worker: str,
        context: dict[str, Any],
        global_settings: GlobalSettings,
        summary: Optional[ViolationSummary] = None,
    ) -> None:
        if not global_settings.enable_violation_tracking:
            return
        try:
            updated = await self.ledger.record(identity, violation_type, worker, context, summary=summary)
        except StoreError as exc:
            log_error("engine", "record_violation", exc, {"identity": identity, "type": violation_type.value})
            return
        log_violation(identity, violation_type.value, worker, updated.count_within(self._clock(), ESCALATION_WINDOW))

    async def _penalize(
        self,
        identity: str,
        worker: str,
        window: Window,
        usage: dict[Window, int],
        config: RateLimitConfig,
        global_settings: GlobalSettings,
        request_meta: dict[str, Any],
    ):
        """Block per escalation table, then record the violation. Returns (duration, expires_at)."""
        summary: Optional[ViolationSummary] = None
        if global_settings.enable_violation_tracking:
            try:
                summary = await self.ledger.summary(identity)
            except StoreError as exc:
                log_error("engine", "read_violations", exc, {"identity": identity})
        history = summary or ViolationSummary(identity=identity)

        try:
            block, _banned = await self.escalator.apply(
                identity, worker, ViolationType.RATE_LIMIT_EXCEEDED.value, history, config,
            )
            duration, expires_at = block.remaining_seconds(block.applied_at), block.expires_at
        except StoreError as exc:
            log_error("engine", "apply_penalty", exc, {"identity": identity})
            now = self._clock()
            duration = escalate(count_recent(history, now), config.penalties)
            expires_at = None

        context = {
            **request_meta,
            "exceeded_window": window.value,
            "usage": _by_name(usage),
        }
        await self._note_violation(
            identity, ViolationType.RATE_LIMIT_EXCEEDED, worker, context, global_settings, summary=summary,
        )
        return duration, expires_at

    # ──────────────────────────────────────────────────────────────────────────
    # Commit
    # ──────────────────────────────────────────────────────────────────────────

    async def commit(self, identity: str, worker: str) -> None:
        """
        Count one successful request. Buffered; a failure is logged and the
        increment dropped rather than surfaced to the caller.
        """
        identity = sanitize_identity(identity)
        worker = sanitize_worker(worker)
        try:
            keys = bucket_keys(identity, worker, self._clock())
            if not self._write_coalescing:
                for window, key in keys.items():
                    await self.usage.increment(key, window)
                self.cache.forget(identity, worker)
                return
            counts = await self._read_usage(identity, worker, keys)
            self.cache.record_increment(identity, worker, keys, counts)
        except Exception as exc:
            log_error("engine", "commit", exc, {"identity": identity, "worker": worker})

    async def usage_for(self, identity: str, worker: str) -> dict[str, int]:
        identity = sanitize_identity(identity)
        worker = sanitize_worker(worker)
        keys = bucket_keys(identity, worker, self._clock())
        return _by_name(await self._read_usage(identity, worker, keys))

    # ──────────────────────────────────────────────────────────────────────────
    # Admin operations
    # ──────────────────────────────────────────────────────────────────────────

    async def _admin(self, action: str, identity: str, operation: Callable, actor: Optional[str] = None) -> AdminResult:
        try:
            await operation()
        except Exception as exc:
            log_admin_action(action, identity, success=False, actor=actor, error=str(exc))
            return AdminResult(success=False, error=str(exc) or type(exc).__name__)
        log_admin_action(action, identity, success=True, actor=actor)
        return AdminResult(success=True)

    async def add_to_allow_list(self, identity: str, reason: str = "", added_by: str = "admin") -> AdminResult:
        return await self._admin(
            "add_to_allow_list", identity, lambda: self.allow_list.add(identity, reason, added_by), added_by,
        )

    async def remove_from_allow_list(self, identity: str) -> AdminResult:
        return await self._admin("remove_from_allow_list", identity, lambda: self.allow_list.remove(identity))

    async def add_to_deny_list(self, identity: str, reason: str = "", added_by: str = "admin") -> AdminResult:
        return await self._admin(
            "add_to_deny_list", identity, lambda: self.deny_list.add(identity, reason, added_by), added_by,
        )

    async def remove_from_deny_list(self, identity: str) -> AdminResult:
        return await self._admin("remove_from_deny_list", identity, lambda: self.deny_list.remove(identity))

    async def clear_block(self, identity: str) -> AdminResult:
        return await self._admin("clear_block", identity, lambda: self.blocks.clear(identity))

    async def identity_status(self, identity: str, worker: str) -> IdentityStatus:
        """Read-only snapshot for admins. Store errors propagate to the caller."""
        identity = sanitize_identity(identity)
        worker = sanitize_worker(worker)
        return IdentityStatus(
            identity=identity,
            worker=worker,
            allow_entry=await self.allow_list.check(identity),
            deny_entry=await self.deny_list.check(identity),
            block=await self.blocks.active(identity),
            usage=await self.usage_for(identity, worker),
            violations=await self.ledger.summary(identity),
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        self.cache.start()

    async def close(self) -> None:
        await self.cache.close()


class SampledRateLimitEngine(RateLimitEngine):
    """
    DEGRADED MODE. Deny list, allow list and blocks are always checked, but a
    usage cache miss only reads the store for `sample_rate` of requests; the
    rest are admitted as SAMPLED_SKIP. Weaker guarantee, lower read cost.
    Off unless explicitly enabled.
    """

    def __init__(
        self,
        *args: Any,
        sample_rate: float = 0.1,
        rng: Callable[[], float] = random.random,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._sample_rate = sample_rate
        self._rng = rng

    def _should_read_usage(self) -> bool:
        return self._rng() < self._sample_rate


# ──────────────────────────────────────────────────────────────────────────────
# Wiring
# ──────────────────────────────────────────────────────────────────────────────

def build_engine(settings: Settings, kv: KVStore, clock: Clock = utc_now) -> RateLimitEngine:
    """Construct an engine and all its collaborators over one KV store."""
    usage = UsageCounterStore(RecordStore(kv, "ratelimits"))
    blocks = BlockGate(RecordStore(kv, "ratelimits:block"), clock=clock)
    allow_list = AccessList(RecordStore(kv, "whitelist"), ListKind.ALLOW, clock=clock)
    deny_list = AccessList(RecordStore(kv, "blacklist"), ListKind.DENY, clock=clock)
    ledger = ViolationLedger(
        RecordStore(kv, "violations"),
        clock=clock,
        retention_seconds=settings.violation_retention_seconds,
        summary_cap=settings.violation_summary_cap,
    )
    cache = WriteCoalescingCache(
        usage,
        ttl_seconds=settings.usage_cache_ttl_seconds,
        max_entries=settings.usage_cache_max_entries,
        evict_fraction=settings.usage_cache_evict_fraction,
        flush_interval_seconds=settings.flush_interval_seconds,
        batch_size=settings.flush_batch_size,
        buffer_ttl_seconds=settings.buffer_ttl_seconds,
        clock=clock,
    )
    resolver = ConfigResolver(
        RecordStore(kv, "config"),
        ConfigChangeLog(RecordStore(kv, "analytics"), clock=clock, ttl_seconds=settings.config_log_ttl_seconds),
        clock=clock,
        cache_ttl_seconds=settings.config_cache_ttl_seconds,
        record_ttl_seconds=settings.config_record_ttl_seconds,
    )
    parts = dict(
        allow_list=allow_list,
        deny_list=deny_list,
        blocks=blocks,
        usage=usage,
        cache=cache,
        ledger=ledger,
        escalator=PenaltyEscalator(blocks, deny_list, clock=clock),
        resolver=resolver,
        clock=clock,
        write_coalescing=settings.write_coalescing,
    )
    if settings.sampled_mode:
        logger.warning(f"Sampled rate limiting enabled (rate={settings.sampled_check_rate}); degraded guarantees")
        return SampledRateLimitEngine(sample_rate=settings.sampled_check_rate, **parts)
    return RateLimitEngine(**parts)
