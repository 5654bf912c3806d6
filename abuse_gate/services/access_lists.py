"""
abuse_gate/services/access_lists.py — Allow-list and deny-list stores
An active deny entry is a permanent, unconditional deny; an active allow
entry unconditionally admits. Entries never expire: admin action only.
"""
from __future__ import annotations

from typing import Optional

from abuse_gate.core.records import RecordStore
from abuse_gate.models import ListEntry, ListKind
from abuse_gate.utils.timezone import Clock, utc_now


class AccessList:
    """One list (allow or deny), keyed by identity."""

    def __init__(self, records: RecordStore, kind: ListKind, clock: Clock = utc_now) -> None:
        self._records = records
        self.kind = kind
        self._clock = clock

    async def add(self, identity: str, reason: str = "", added_by: str = "admin") -> ListEntry:
        entry = ListEntry(
            identity=identity,
            reason=reason or ("Whitelisted" if self.kind == ListKind.ALLOW else "Blacklisted"),
            added_by=added_by,
            added_at=self._clock(),
            active=True,
        )
        await self._records.put_model(identity, entry)
        return entry

    async def remove(self, identity: str) -> None:
        await self._records.delete(identity)

    async def check(self, identity: str) -> Optional[ListEntry]:
        """Return the active entry for `identity`; inactive or malformed counts as absent."""
        entry = await self._records.get_model(identity, ListEntry)
        if entry is None or not entry.active:
            return None
        return entry

    async def list_entries(self) -> list[ListEntry]:
        entries = []
        for identity in await self._records.list_keys():
            entry = await self._records.get_model(identity, ListEntry)
            if entry is not None:
                entries.append(entry)
        return entries
