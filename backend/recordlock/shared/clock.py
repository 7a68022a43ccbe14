from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Protocol

# locks older than this are expired whatever the configured timeout says
HARD_CEILING = timedelta(hours=1)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: datetime) -> datetime:
    """Naive UTC, the form timestamps are stored in."""
    return as_utc(value).replace(tzinfo=None)


def effective_timeout(timeout: timedelta) -> timedelta:
    return min(timeout, HARD_CEILING)


def expiry_cutoff(now: datetime, timeout: timedelta) -> datetime:
    """Locks acquired at or before the cutoff are expired."""
    return as_utc(now) - effective_timeout(timeout)


def is_expired(acquired_at: datetime, now: datetime, timeout: timedelta) -> bool:
    return as_utc(acquired_at) <= expiry_cutoff(now, timeout)


def remaining_seconds(acquired_at: datetime, now: datetime, timeout: timedelta) -> int:
    left = as_utc(acquired_at) + effective_timeout(timeout) - as_utc(now)
    return max(int(left.total_seconds()), 0)
