"""
Clock capability.

All entitlement code reads "now" through a Clock so that tests can pin or
advance time deterministically. Datetimes are always timezone-aware UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to a settable instant (tests, replays)."""

    def __init__(self, current: datetime):
        self._current = ensure_utc(current)

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = ensure_utc(current)

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        self._current = self._current + (delta if delta is not None else timedelta(**kwargs))
        return self._current


system_clock = SystemClock()


def resolve_clock(clock: Optional[Clock] = None) -> Clock:
    return clock if clock is not None else system_clock


def get_clock() -> Clock:
    """FastAPI dependency; tests override it with a FixedClock."""
    return system_clock


def start_of_month(value: datetime) -> datetime:
    """First instant of value's UTC calendar month."""
    value = ensure_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def start_of_next_month(value: datetime) -> datetime:
    first = start_of_month(value)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def month_year(value: datetime) -> str:
    """YYYY-MM key of value's UTC calendar month."""
    return ensure_utc(value).strftime("%Y-%m")
