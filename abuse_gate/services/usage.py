"""
abuse_gate/services/usage.py — Usage counter store
One integer per (identity, worker, window, bucket) key. Counters are only
ever created by an increment, never decremented, and expire on their own.
There is no compare-and-set: increment is read-then-write, so concurrent
writers may undercount. That is accepted, not locked around.
"""
from __future__ import annotations

from abuse_gate.core.records import RecordStore
from abuse_gate.models import Window
from abuse_gate.utils.buckets import window_ttl_seconds


class UsageCounterStore:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def get_all(self, keys: list[str]) -> dict[str, int]:
        """Current counts; missing or expired keys read as 0."""
        if not keys:
            return {}
        return await self._records.get_ints(keys)

    async def get_windows(self, keys: dict[Window, str]) -> dict[Window, int]:
        counts = await self.get_all(list(keys.values()))
        return {window: counts.get(key, 0) for window, key in keys.items()}

    async def increment(self, key: str, window: Window) -> int:
        """Unbuffered increment (used when write coalescing is off)."""
        current = (await self.get_all([key])).get(key, 0)
        new_count = current + 1
        await self._records.put_int(key, new_count, ttl_seconds=window_ttl_seconds(window))
        return new_count

    async def write(self, key: str, value: int, ttl_seconds: int) -> None:
        """Absolute write, used by the write-coalescing flush."""
        await self._records.put_int(key, value, ttl_seconds=ttl_seconds)
