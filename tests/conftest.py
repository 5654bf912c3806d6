"""
tests/conftest.py — Shared pytest fixtures
"""
from __future__ import annotations

import asyncio
import os

# Must be set before any abuse_gate import reads settings
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from datetime import datetime, timedelta
from typing import Optional

import pytest

from abuse_gate.clients.kv_store import InMemoryKVStore
from abuse_gate.config import Settings
from abuse_gate.services.engine import build_engine
from abuse_gate.utils.timezone import UTC, utc_now

# Wednesday, mid-hour, mid-month
START = UTC.localize(datetime(2025, 1, 15, 10, 30, 0))


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FailingKVStore(InMemoryKVStore):
    """In-memory store whose operations can be switched to fail."""

    def __init__(self, clock=None, fail_on: Optional[set[str]] = None, prefix: str = "") -> None:
        super().__init__(clock=clock or utc_now)
        self.fail_on = set(fail_on or ())
        self.prefix = prefix

    def _check(self, operation: str, key: str) -> None:
        if operation in self.fail_on and key.startswith(self.prefix):
            raise ConnectionError(f"store offline during {operation}")

    async def get(self, key):
        self._check("get", key)
        return await super().get(key)

    async def get_many(self, keys):
        for key in keys:
            self._check("get", key)
        return await super().get_many(keys)

    async def put(self, key, value, ttl_seconds=None):
        self._check("put", key)
        return await super().put(key, value, ttl_seconds)

    async def delete(self, key):
        self._check("delete", key)
        return await super().delete(key)

    async def list_keys(self, prefix):
        self._check("list", prefix)
        return await super().list_keys(prefix)

    async def ping(self) -> bool:
        return "get" not in self.fail_on


class SlowKVStore(InMemoryKVStore):
    """In-memory store with latency: reads suspend, and the first write can lag."""

    def __init__(self, clock=None, read_delay: float = 0.0, first_put_delay: float = 0.0) -> None:
        super().__init__(clock=clock or utc_now)
        self.read_delay = read_delay
        self.first_put_delay = first_put_delay

    async def get_many(self, keys):
        await asyncio.sleep(self.read_delay)
        return await super().get_many(keys)

    async def put(self, key, value, ttl_seconds=None):
        if self.first_put_delay:
            delay, self.first_put_delay = self.first_put_delay, 0.0
            await asyncio.sleep(delay)
        return await super().put(key, value, ttl_seconds)


def make_settings(**overrides) -> Settings:
    values = dict(environment="testing", admin_api_key="test-admin-key", store_url="memory://")
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def kv(clock) -> InMemoryKVStore:
    return InMemoryKVStore(clock=clock)


@pytest.fixture
def failing_kv(clock) -> FailingKVStore:
    return FailingKVStore(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(settings, kv, clock):
    return build_engine(settings, kv, clock=clock)
