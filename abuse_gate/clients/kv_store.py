"""
abuse_gate/clients/kv_store.py — Key-value store backends
The gate needs nothing more than get / put-with-TTL / delete against a
shared store: no transactions, no compare-and-set. Two backends:
  - InMemoryKVStore: single process, used in development and tests
  - RedisKVStore:    shared across instances (redis.asyncio)
Store TTL is advisory; callers that care about expiry check timestamps.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as redis
from loguru import logger

from abuse_gate.utils.timezone import Clock, utc_now


class KVStore(ABC):
    """Interface every backend implements. All calls are I/O boundaries."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for `key`, or None if absent/expired."""

    @abstractmethod
    async def get_many(self, keys: list[str]) -> dict[str, Optional[str]]:
        """Batch read. Missing keys map to None."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Write `value`; expire after `ttl_seconds` when given."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove `key`. Deleting a missing key is not an error."""

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """Return live keys starting with `prefix`."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ──────────────────────────────────────────────────────────────────────────────

class InMemoryKVStore(KVStore):
    """Dict-backed store with lazy expiry on read."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[datetime]]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def get_many(self, keys: list[str]) -> dict[str, Optional[str]]:
        return {k: self._live(k) for k in keys}

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    def __len__(self) -> int:
        return len(self._data)


# ──────────────────────────────────────────────────────────────────────────────
# Redis backend
# ──────────────────────────────────────────────────────────────────────────────

class RedisKVStore(KVStore):
    """redis.asyncio client; TTLs map to SET ... EX."""

    def __init__(self, url: str, client: Optional[redis.Redis] = None) -> None:
        self._url = url
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def get_many(self, keys: list[str]) -> dict[str, Optional[str]]:
        if not keys:
            return {}
        values = await self._client.mget(keys)
        return dict(zip(keys, values))

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            await self._client.set(key, value, ex=max(1, int(ttl_seconds)))
        else:
            await self._client.set(key, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def list_keys(self, prefix: str) -> list[str]:
        return [k async for k in self._client.scan_iter(match=f"{prefix}*")]

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as exc:
            logger.warning(f"Redis ping failed: {exc}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_kv_store(url: str, clock: Clock = utc_now) -> KVStore:
    """Pick a backend from the URL scheme."""
    if url.startswith("memory://"):
        return InMemoryKVStore(clock=clock)
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info(f"Using Redis store at {url.split('@')[-1]}")
        return RedisKVStore(url)
    raise ValueError(f"Unsupported store URL scheme: {url!r}")
