from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    """Wall-clock milliseconds; the timestamp part of transaction numbers."""
    return int(time.time() * 1000)


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a report/query date into a naive UTC datetime.

    Accepts "YYYY-MM-DD", "YYYY-MM-DDTHH:MM[:SS]" (read as UTC) and offsets
    such as "Z" or "+02:00" (converted). Blank input gives None; anything
    else unparseable raises ValueError.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def parse_range_end(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the upper bound of a date filter.

    A date without a time component ("2024-05-01") covers the whole day,
    so it is pushed to the last microsecond of that day.
    """
    dt = parse_iso_datetime(value)
    if dt is None:
        return None
    if "T" not in value and " " not in value.strip():
        return dt + timedelta(days=1) - timedelta(microseconds=1)
    return dt


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Render a stored timestamp as second-precision ISO-8601 with a trailing 'Z'."""
    if dt is None:
        return None
    return _as_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
