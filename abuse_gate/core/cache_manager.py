"""
abuse_gate/core/cache_manager.py — Write-coalescing cache in front of the usage store
Per-request durable writes are the dominant cost, so commits never write
synchronously. Two process-local maps:

  read cache    (identity, worker) → counts for the current buckets, ~60s
  write buffer  counter key → latest absolute value, flushed every 5s or
                as soon as it holds more than 50 keys

Both maps are shadow state only; the durable store stays authoritative.
Mutations never await between reading and writing a map, so they are safe
under concurrent request handlers on one event loop without locks.
Only flushes are serialised, and they run detached from requests.

Accepted inaccuracy: a client can exceed its limit by a bounded margin
(what other instances committed within one cache TTL plus one flush
interval), and concurrent cold-cache commits can undercount by the number
of racing writers.
"""
from __future__ import annotations

import asyncio
import math
import time
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from loguru import logger

from abuse_gate.core.errors import StoreError
from abuse_gate.core.logging import log_error, log_flush
from abuse_gate.models import Window
from abuse_gate.utils.buckets import window_ttl_seconds
from abuse_gate.utils.timezone import Clock, utc_now

if TYPE_CHECKING:
    from abuse_gate.services.usage import UsageCounterStore


# ──────────────────────────────────────────────────────────────────────────────
# Entries and TTL helpers
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class UsageEntry:
    keys: dict[Window, str]
    counts: dict[Window, int]
    updated_at: datetime


@dataclass
class PendingWrite:
    value: int
    ttl_seconds: int


def is_expired(updated_at: datetime, ttl_seconds: float, now: datetime) -> bool:
    """Return True if the cache entry has passed its TTL."""
    return now >= updated_at + timedelta(seconds=ttl_seconds)


# ──────────────────────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────────────────────

class WriteCoalescingCache:
    """Explicitly constructed per process (or per test); never a module singleton."""

    def __init__(
        self,
        store: "UsageCounterStore",
        ttl_seconds: float = 60,
        max_entries: int = 10_000,
        evict_fraction: float = 0.2,
        flush_interval_seconds: float = 5.0,
        batch_size: int = 50,
        buffer_ttl_seconds: int = 7200,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._evict_fraction = evict_fraction
        self._flush_interval = flush_interval_seconds
        self._batch_size = batch_size
        self._buffer_ttl = buffer_ttl_seconds
        self._clock = clock

        self._entries: dict[tuple[str, str], UsageEntry] = {}
        self._pending: dict[str, PendingWrite] = {}
        self._inflight: dict[str, PendingWrite] = {}
        self._flush_lock = asyncio.Lock()
        self._size_flush_queued = False
        self._flush_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # ── Read cache ────────────────────────────────────────────────────────────

    def get_usage(
        self,
        identity: str,
        worker: str,
        keys: dict[Window, str],
    ) -> Optional[dict[Window, int]]:
        """Cached counts, or None on miss, expiry or bucket rollover."""
        entry = self._entries.get((identity, worker))
        if entry is None:
            return None
        if entry.keys != keys or is_expired(entry.updated_at, self._ttl, self._clock()):
            self._entries.pop((identity, worker), None)
            return None
        return dict(entry.counts)

    def put_usage(
        self,
        identity: str,
        worker: str,
        keys: dict[Window, str],
        counts: dict[Window, int],
    ) -> None:
        self._entries[(identity, worker)] = UsageEntry(
            keys=dict(keys),
            counts={w: counts.get(w, 0) for w in keys},
            updated_at=self._clock(),
        )
        if len(self._entries) > self._max_entries:
            self.evict()

    def forget(self, identity: str, worker: str) -> None:
        self._entries.pop((identity, worker), None)

    def overlay(self, keys: dict[Window, str], stored: dict[Window, int]) -> dict[Window, int]:
        """Merge store reads with buffered values that have not reached the store yet."""
        merged: dict[Window, int] = {}
        for window, key in keys.items():
            buffered = self._pending.get(key) or self._inflight.get(key)
            merged[window] = max(stored.get(window, 0), buffered.value if buffered else 0)
        return merged

    def evict(self) -> int:
        """
        Drop expired entries; if still over the bound, drop the oldest
        `evict_fraction` by last update. Returns number removed.
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if is_expired(e.updated_at, self._ttl, now)]
        for k in expired:
            del self._entries[k]
        removed = len(expired)

        if len(self._entries) > self._max_entries:
            count = max(1, math.ceil(len(self._entries) * self._evict_fraction))
            oldest = sorted(self._entries, key=lambda k: self._entries[k].updated_at)[:count]
            for k in oldest:
                del self._entries[k]
            removed += len(oldest)

        if removed:
            logger.debug(f"Usage cache evicted {removed} entries ({len(self._entries)} left)")
        return removed

    # ── Write buffer ──────────────────────────────────────────────────────────

    def record_increment(
        self,
        identity: str,
        worker: str,
        keys: dict[Window, str],
        counts: dict[Window, int],
    ) -> dict[Window, int]:
        """
        Apply one committed request on top of `counts`: update the read cache
        and buffer the new absolute values. Returns the new counts.
        """
        new_counts = {w: counts.get(w, 0) + 1 for w in keys}
        for window, key in keys.items():
            self._pending[key] = PendingWrite(
                value=new_counts[window],
                ttl_seconds=max(self._buffer_ttl, window_ttl_seconds(window)),
            )
        self.put_usage(identity, worker, keys, new_counts)

        if len(self._pending) > self._batch_size and not self._size_flush_queued:
            self._schedule_flush("size")
        return new_counts

    def _schedule_flush(self, trigger: str) -> None:
        """Detached flush: owned by the process, not the request that triggered it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if trigger == "size":
            self._size_flush_queued = True
        task = loop.create_task(self.flush(trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def flush(self, trigger: str = "manual") -> int:
        """
        Write every buffered key once. Failed writes are logged and dropped.
        Flushes run one at a time so an older batch can never land after a
        newer one and roll a counter back. Commits never wait on this lock.
        """
        async with self._flush_lock:
            return await self._flush_batch(trigger)

    async def _flush_batch(self, trigger: str) -> int:
        if trigger == "size":
            self._size_flush_queued = False
        if not self._pending:
            return 0
        started = time.monotonic()
        batch, self._pending = self._pending, {}
        self._inflight.update(batch)

        written = 0
        failed = 0
        try:
            for key, write in batch.items():
                try:
                    await self._store.write(key, write.value, write.ttl_seconds)
                    written += 1
                except StoreError as exc:
                    failed += 1
                    logger.warning(f"Dropping buffered count for {key}: {exc}")
        finally:
            for key, write in batch.items():
                if self._inflight.get(key) is write:
                    del self._inflight[key]

        log_flush(written, failed, trigger, (time.monotonic() - started) * 1000)
        return written

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic flush loop on the running event loop."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush("timer")
            except Exception as exc:
                log_error("write_coalescing_cache", "flush_loop", exc)

    async def close(self) -> None:
        """Stop the timer, wait for detached flushes, then flush what is left."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.flush("shutdown")

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def __len__(self) -> int:
        return len(self._entries)
