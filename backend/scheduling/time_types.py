"""Wall-clock windows and absolute intervals.

A doctor's rules are stored as local wall-clock times. Everything that is
compared, sorted or checked for overlap is an ``Interval`` of UTC-aware
datetimes. ``WallClockWindow.to_interval`` is the only place one becomes the
other.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

import pytz

from backend.core.errors import InvalidTimezoneError


def resolve_timezone(name: str | None) -> pytz.BaseTzInfo:
    if not name or not name.strip():
        raise InvalidTimezoneError('Timezone is required.')
    try:
        return pytz.timezone(name.strip())
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidTimezoneError(f'Unknown timezone: {name}') from exc


def localize(naive: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """Attach ``tz`` to a naive local datetime and return the UTC instant.

    Wall-clock times inside a DST gap take the standard-time offset; times that
    occur twice resolve to the standard-time occurrence.
    """
    return tz.localize(naive, is_dst=False).astimezone(pytz.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.utc)
    return value.astimezone(pytz.utc)


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open [start, end) between two absolute instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError('Interval bounds must be timezone-aware.')
        if self.start >= self.end:
            raise ValueError('Interval start must be before its end.')

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: 'Interval') -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: 'Interval') -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class WallClockWindow:
    """Local start/end times on one calendar day in a named zone."""

    day: date
    start_time: time
    end_time: time
    tz: pytz.BaseTzInfo

    def to_interval(self) -> Interval | None:
        """Absolute interval for this window, or None if a spring-forward gap swallows all of it."""
        start = localize(datetime.combine(self.day, self.start_time), self.tz)
        end = localize(datetime.combine(self.day, self.end_time), self.tz)
        if start >= end:
            return None
        return Interval(start, end)


def day_bounds(first_day: date, last_day: date, tz: pytz.BaseTzInfo) -> Interval:
    """Absolute interval covering local midnight of ``first_day`` to the midnight after ``last_day``."""
    return Interval(
        localize(datetime.combine(first_day, time.min), tz),
        localize(datetime.combine(last_day + timedelta(days=1), time.min), tz),
    )


def local_date(instant: datetime, tz: pytz.BaseTzInfo) -> date:
    return instant.astimezone(tz).date()
