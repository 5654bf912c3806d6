"""
abuse_gate/services/block_gate.py — Temporary blocks
Consulted on every request before any counting. The store TTL only cleans
up; the expires_at timestamp decides whether a block is still in force.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from abuse_gate.core.records import RecordStore
from abuse_gate.models import BlockRecord
from abuse_gate.utils.timezone import Clock, utc_now


class BlockGate:
    def __init__(self, records: RecordStore, clock: Clock = utc_now) -> None:
        self._records = records
        self._clock = clock

    async def apply(
        self,
        identity: str,
        duration_seconds: int,
        reason: str,
        worker: str,
        violation_count: int,
    ) -> BlockRecord:
        now = self._clock()
        block = BlockRecord(
            identity=identity,
            expires_at=now + timedelta(seconds=duration_seconds),
            reason=reason,
            violation_count=violation_count,
            worker=worker,
            applied_at=now,
        )
        await self._records.put_model(identity, block, ttl_seconds=duration_seconds)
        return block

    async def active(self, identity: str) -> Optional[BlockRecord]:
        block = await self._records.get_model(identity, BlockRecord)
        if block is None or not block.is_active(self._clock()):
            return None
        return block

    async def clear(self, identity: str) -> None:
        await self._records.delete(identity)
