"""
abuse_gate/core/records.py — Typed record access over a KVStore
This is the error boundary between the gate and its storage:
  - every backend failure surfaces as StoreError (original chained)
  - a stored record that fails to parse is returned as None (absence)
Cancellation (asyncio.CancelledError) is not caught and propagates.
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Optional, Type, TypeVar

from pydantic import BaseModel

from abuse_gate.clients.kv_store import KVStore
from abuse_gate.core.errors import StoreError
from abuse_gate.utils.validators import parse_int_safe, parse_model_safe, safe_parse_json

T = TypeVar("T", bound=BaseModel)
R = TypeVar("R")


class RecordStore:
    """A namespace (`{namespace}:{key}`) of JSON records in a KVStore."""

    def __init__(self, kv: KVStore, namespace: str) -> None:
        self._kv = kv
        self.namespace = namespace

    def full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _call(self, operation: str, key: str, awaitable: Awaitable[R]) -> R:
        try:
            return await awaitable
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(operation, key, f"store {operation} failed for {key!r}: {exc}") from exc

    # ── Raw JSON ──────────────────────────────────────────────────────────────

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        full = self.full_key(key)
        raw = await self._call("get", full, self._kv.get(full))
        return safe_parse_json(raw)

    async def put_json(self, key: str, data: dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        full = self.full_key(key)
        payload = json.dumps(data, default=str)
        await self._call("put", full, self._kv.put(full, payload, ttl_seconds))

    # ── Pydantic models ───────────────────────────────────────────────────────

    async def get_model(self, key: str, model_class: Type[T]) -> Optional[T]:
        data = await self.get_json(key)
        return parse_model_safe(model_class, data, context=self.full_key(key))

    async def put_model(self, key: str, model: BaseModel, ttl_seconds: Optional[int] = None) -> None:
        full = self.full_key(key)
        await self._call("put", full, self._kv.put(full, model.model_dump_json(), ttl_seconds))

    # ── Integer counters ──────────────────────────────────────────────────────

    async def get_ints(self, keys: list[str]) -> dict[str, int]:
        full_keys = [self.full_key(k) for k in keys]
        raw = await self._call("get_many", ",".join(full_keys), self._kv.get_many(full_keys))
        return {k: parse_int_safe(raw.get(fk)) for k, fk in zip(keys, full_keys)}

    async def put_int(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        full = self.full_key(key)
        await self._call("put", full, self._kv.put(full, str(int(value)), ttl_seconds))

    # ── Misc ──────────────────────────────────────────────────────────────────

    async def delete(self, key: str) -> None:
        full = self.full_key(key)
        await self._call("delete", full, self._kv.delete(full))

    async def list_keys(self, prefix: str = "") -> list[str]:
        """List keys under this namespace, returned without the namespace prefix."""
        full_prefix = self.full_key(prefix)
        keys = await self._call("list", full_prefix, self._kv.list_keys(full_prefix))
        strip = len(self.namespace) + 1
        return [k[strip:] for k in keys]
