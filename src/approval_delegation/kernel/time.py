"""
Time provider abstraction for deterministic testing

Grant status is a pure function of the caller's clock, so the clock is
injected everywhere instead of read from the system directly. Tests freeze
and advance it to walk a grant through Scheduled, Active and Expired.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class TimeProvider(Protocol):
    """Protocol for time providers - allows deterministic testing"""

    def now(self) -> datetime:
        """Return current UTC datetime"""
        ...


class RealTimeProvider:
    """Production time provider using system clock"""

    def now(self) -> datetime:
        """Return current UTC time from system clock"""
        return datetime.now(timezone.utc)


class TestTimeProvider:
    """
    Controllable time provider for deterministic tests

    Allows tests to freeze time, advance time, and ensure
    reproducible event timestamps.
    """

    __test__ = False

    def __init__(self, initial_time: datetime | None = None) -> None:
        """
        Initialize with optional fixed time

        Args:
            initial_time: Starting time (defaults to Unix epoch)
        """
        self._current_time = initial_time or datetime(1970, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        """Return current test time"""
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        """Set current time to specific value"""
        self._current_time = dt

    def advance_seconds(self, seconds: int) -> None:
        """Advance time by specified seconds"""
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        """Advance time by specified days"""
        self._current_time += timedelta(days=days)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(dt: datetime, tz_name: str = "UTC") -> date:
    """Calendar date of an instant in the given business timezone"""
    return ensure_aware(dt).astimezone(ZoneInfo(tz_name)).date()


def end_of_day(day: date, tz_name: str = "UTC") -> datetime:
    """Last representable instant of a calendar day, as UTC"""
    local = datetime.combine(day, time.max, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


# Global default time provider
default_time_provider: TimeProvider = RealTimeProvider()
