"""
abuse_gate/utils/buckets.py — Calendar-aligned usage bucket keys
Pure functions. A counter key names its window instance explicitly, so a
read after rollover lands on a fresh key and returns zero.

Label formats (UTC):
    hourly   YYYY-MM-DD:HH
    daily    YYYY-MM-DD
    weekly   GGGG-Www   (ISO 8601 week; GGGG is the ISO week-numbering year)
    monthly  YYYY-MM
"""
from __future__ import annotations

from datetime import datetime, timedelta

from abuse_gate.models import WINDOWS, Window
from abuse_gate.utils.timezone import ensure_utc

USAGE_PREFIX = "usage"

# Counter TTLs; each is at least as long as the longest instance of its window
WINDOW_TTL_SECONDS: dict[Window, int] = {
    Window.HOURLY: 3600,
    Window.DAILY: 86400,
    Window.WEEKLY: 7 * 86400,
    Window.MONTHLY: 31 * 86400,
}


def bucket_label(window: Window, instant: datetime) -> str:
    """Return the label of the bucket of `window` containing `instant`."""
    dt = ensure_utc(instant)
    if window == Window.HOURLY:
        return dt.strftime("%Y-%m-%d:%H")
    if window == Window.DAILY:
        return dt.strftime("%Y-%m-%d")
    if window == Window.WEEKLY:
        iso_year, iso_week, _ = dt.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if window == Window.MONTHLY:
        return dt.strftime("%Y-%m")
    raise ValueError(f"Invalid window type: {window!r}")


def bucket_key(identity: str, worker: str, window: Window, instant: datetime) -> str:
    """Storage key for one (identity, worker, window, bucket) counter."""
    return f"{USAGE_PREFIX}:{identity}:{worker}:{window.value}:{bucket_label(window, instant)}"


def bucket_keys(identity: str, worker: str, instant: datetime) -> dict[Window, str]:
    """Keys for all four windows at `instant`, in check order."""
    return {w: bucket_key(identity, worker, w, instant) for w in WINDOWS}


def window_ttl_seconds(window: Window) -> int:
    return WINDOW_TTL_SECONDS[window]


def bucket_start(window: Window, instant: datetime) -> datetime:
    dt = ensure_utc(instant)
    if window == Window.HOURLY:
        return dt.replace(minute=0, second=0, microsecond=0)
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == Window.DAILY:
        return day
    if window == Window.WEEKLY:
        return day - timedelta(days=day.weekday())  # Monday
    if window == Window.MONTHLY:
        return day.replace(day=1)
    raise ValueError(f"Invalid window type: {window!r}")


def next_reset(window: Window, instant: datetime) -> datetime:
    """Start of the bucket after the one containing `instant`."""
    start = bucket_start(window, instant)
    if window == Window.HOURLY:
        return start + timedelta(hours=1)
    if window == Window.DAILY:
        return start + timedelta(days=1)
    if window == Window.WEEKLY:
        return start + timedelta(days=7)
    # Monthly: first day of the following month
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def reset_times(instant: datetime) -> dict[Window, datetime]:
    return {w: next_reset(w, instant) for w in WINDOWS}
