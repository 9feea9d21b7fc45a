"""Timestamp helpers.

The Local Store keeps naive UTC datetimes (SQLite drops tzinfo); the
remote backend speaks ISO 8601 with an explicit offset. Everything crossing
that boundary goes through these helpers.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_remote_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_remote_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a remote timestamp into naive UTC.

    Accepts "2026-02-04T10:00:00Z", "2026-02-04T10:00:00.123456+00:00",
    and plain dates ("2026-02-04", as used by trip start/end dates).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        if "T" not in s and " " not in s:
            d = date.fromisoformat(s)
            return datetime(d.year, d.month, d.day)
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
