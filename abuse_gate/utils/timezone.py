"""
abuse_gate/utils/timezone.py — UTC clock helpers
All bucket labels, block expiries and violation timestamps are UTC so that
every process instance agrees on bucket boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

import pytz

UTC = pytz.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return UTC.localize(dt)
    return dt.astimezone(UTC)


def to_epoch_ms(dt: datetime) -> int:
    return int(ensure_utc(dt).timestamp() * 1000)
