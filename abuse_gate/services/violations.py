"""
abuse_gate/services/violations.py — Violation ledger
Two records per identity:
  violation:{identity}:{epoch_ms}  one ViolationRecord per event (30 days)
  summary:{identity}               ViolationSummary, last 50 events (30 days)
The summary is what escalation reads; it is rebuilt by append-and-truncate.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from abuse_gate.core.records import RecordStore
from abuse_gate.models import ViolationRecord, ViolationSummary, ViolationType
from abuse_gate.utils.timezone import Clock, to_epoch_ms, utc_now

ESCALATION_WINDOW = timedelta(hours=24)


class ViolationLedger:
    def __init__(
        self,
        records: RecordStore,
        clock: Clock = utc_now,
        retention_seconds: int = 30 * 86400,
        summary_cap: int = 50,
    ) -> None:
        self._records = records
        self._clock = clock
        self._retention = retention_seconds
        self._cap = summary_cap

    @staticmethod
    def _summary_key(identity: str) -> str:
        return f"summary:{identity}"

    async def summary(self, identity: str) -> ViolationSummary:
        """Absent or malformed summaries read as an empty history."""
        summary = await self._records.get_model(self._summary_key(identity), ViolationSummary)
        return summary or ViolationSummary(identity=identity)

    async def record(
        self,
        identity: str,
        violation_type: ViolationType,
        worker: str,
        context: Optional[dict[str, Any]] = None,
        summary: Optional[ViolationSummary] = None,
    ) -> ViolationSummary:
        """
        Store one violation and append it to the summary.
        Pass `summary` when the caller already read it this request to save a read.
        """
        now = self._clock()
        violation = ViolationRecord(
            identity=identity,
            type=violation_type,
            worker=worker,
            timestamp=now,
            context=context or {},
        )
        await self._records.put_model(
            f"violation:{identity}:{to_epoch_ms(now)}",
            violation,
            ttl_seconds=self._retention,
        )

        if summary is None:
            summary = await self.summary(identity)
        updated = ViolationSummary(
            identity=identity,
            violations=(summary.violations + [violation])[-self._cap:],
            total_count=summary.total_count + 1,
            last_violation_at=now,
        )
        await self._records.put_model(
            self._summary_key(identity),
            updated,
            ttl_seconds=self._retention,
        )
        return updated

    async def history(self, identity: str) -> list[ViolationRecord]:
        """Individual records still retained for `identity`, oldest first."""
        records = []
        for key in sorted(await self._records.list_keys(f"violation:{identity}:")):
            violation = await self._records.get_model(key, ViolationRecord)
            if violation is not None:
                records.append(violation)
        return records
