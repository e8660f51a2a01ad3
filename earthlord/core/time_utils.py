from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

# A clock is any zero-argument callable returning an aware UTC datetime.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure the given datetime is timezone-aware in UTC.

    - If dt is None, returns None.
    - If dt is naive, it is taken to already be UTC (the storage convention).
    - If dt has a timezone, convert to UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339/ISO8601 string with 'Z' suffix for UTC.

    Returns None if dt is None.
    """
    if dt is None:
        return None
    s = ensure_aware_utc(dt).isoformat()
    if s.endswith("+00:00"):
        s = s[:-6] + "Z"
    return s


def parse_utc(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an ISO8601 string (supporting trailing 'Z') or pass-through datetime into aware UTC.

    Returns None if value is None or blank; raises ValueError on malformed input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware_utc(value)
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return ensure_aware_utc(datetime.fromisoformat(s))


def seconds_between(start: datetime, end: datetime) -> float:
    """Signed number of seconds from start to end, both normalized to UTC."""
    return (ensure_aware_utc(end) - ensure_aware_utc(start)).total_seconds()


class FixedClock:
    """Manually advanced clock for deterministic expiry/progress computations.

    Used by tests and tooling that replay a timeline; production code uses utc_now.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = ensure_aware_utc(start) if start is not None else utc_now()

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = ensure_aware_utc(when)


__all__ = [
    "Clock",
    "FixedClock",
    "utc_now",
    "ensure_aware_utc",
    "isoformat_utc",
    "parse_utc",
    "seconds_between",
]
