"""
Slot resolution.

Turns a doctor's availability rules into a grid of fixed-length slots for a
date range:

1. expand every active rule into the doctor-local days it applies to
2. materialise each day's wall-clock window as an absolute interval
3. let date-scoped rules replace the weekly template on the days they cover
4. cut each merged window into slot-length chunks, dropping a short tail
5. flag chunks that overlap a confirmed or completed appointment
6. present the result in the caller's timezone

Ordering and overlap checks only ever happen on UTC instants.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from backend.core import config
from backend.core.errors import (
    DoctorNotApprovedError,
    InvalidRangeError,
    InvalidSlotDurationError,
    NotFoundError,
)
from backend.models.doctor import DoctorStatus
from backend.scheduling.recurrence import AvailabilityRule, RuleSource, expand_rule
from backend.scheduling.time_types import (
    Interval,
    WallClockWindow,
    day_bounds,
    local_date,
    resolve_timezone,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableSlot:
    start: datetime
    end: datetime
    available: bool


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Join overlapping or touching intervals."""
    if not intervals:
        return []

    ordered = sorted(intervals)
    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
        else:
            merged.append(current)
    return merged


def partition_interval(window: Interval, slot_length: timedelta) -> list[Interval]:
    chunks: list[Interval] = []
    current = window.start
    while current + slot_length <= window.end:
        chunks.append(Interval(current, current + slot_length))
        current += slot_length
    return chunks


def mark_booked(chunks: list[Interval], booked: list[Interval]) -> list[tuple[Interval, bool]]:
    return [(chunk, not any(chunk.overlaps(interval) for interval in booked)) for chunk in chunks]


def validate_range(from_date: date, to_date: date, slot_duration_minutes: int) -> None:
    if slot_duration_minutes <= 0:
        raise InvalidSlotDurationError('Slot duration must be a positive number of minutes.')
    if from_date > to_date:
        raise InvalidRangeError('Start date must be on or before end date.')
    if (to_date - from_date).days + 1 > config.MAX_SLOT_RANGE_DAYS:
        raise InvalidRangeError(f'Date range cannot exceed {config.MAX_SLOT_RANGE_DAYS} days.')


def collect_windows(
    rules: list[AvailabilityRule],
    first_day: date,
    last_day: date,
    doctor_tz,
    unavailable_days: set[date],
) -> dict[tuple[date, RuleSource], list[Interval]]:
    """Absolute windows per (doctor-local day, rule source)."""
    windows: dict[tuple[date, RuleSource], list[Interval]] = defaultdict(list)
    for rule in rules:
        for day in expand_rule(rule, first_day, last_day):
            if day in unavailable_days:
                continue
            day_intervals = windows[(day, rule.source)]
            interval = WallClockWindow(day, rule.start_time, rule.end_time, doctor_tz).to_interval()
            # A window lost to a DST gap still claims its day for precedence.
            if interval is not None:
                day_intervals.append(interval)
    return windows


def resolve_precedence(
    windows: dict[tuple[date, RuleSource], list[Interval]],
) -> dict[date, list[Interval]]:
    """Pick one rule source per day; a date-scoped rule hides that day's template."""
    override_days = {day for day, source in windows if source is RuleSource.DATE}
    resolved: dict[date, list[Interval]] = {}
    for (day, source), intervals in windows.items():
        if source is RuleSource.TEMPLATE and day in override_days:
            continue
        resolved[day] = merge_intervals(intervals)
    return resolved


def get_available_slots(
    repository,
    doctor_id: int,
    from_date: date,
    to_date: date,
    timezone_name: str,
    slot_duration_minutes: int,
) -> list[AvailableSlot]:
    """Resolve the slot grid for ``doctor_id`` over [from_date, to_date] in ``timezone_name``.

    ``repository`` provides ``get_doctor``, ``list_active_rules``,
    ``list_unavailable_dates`` and ``list_booked_intervals``. Every call reads
    it fresh; either the full grid is returned or an error is raised.
    """
    validate_range(from_date, to_date, slot_duration_minutes)
    requested_tz = resolve_timezone(timezone_name)

    doctor = repository.get_doctor(doctor_id)
    if doctor is None:
        raise NotFoundError('Doctor profile not found.')
    if doctor.status != DoctorStatus.APPROVED.value:
        raise DoctorNotApprovedError('Doctor is not approved.')
    doctor_tz = resolve_timezone(doctor.timezone or config.DEFAULT_TIMEZONE)

    query_window = day_bounds(from_date, to_date, requested_tz)
    first_day = local_date(query_window.start, doctor_tz)
    last_day = local_date(query_window.end - timedelta(microseconds=1), doctor_tz)

    rules = [
        rule for rule in repository.list_active_rules(doctor_id)
        if rule.can_intersect(first_day, last_day)
    ]
    if not rules:
        logger.debug('Doctor %s has no rules between %s and %s', doctor_id, first_day, last_day)
        return []

    longest_window = max(rule.window_length_minutes for rule in rules)
    if slot_duration_minutes > longest_window:
        raise InvalidSlotDurationError(
            f'Slot duration cannot exceed the longest availability window ({longest_window} minutes).'
        )

    unavailable_days = repository.list_unavailable_dates(doctor_id, first_day, last_day)
    windows = collect_windows(rules, first_day, last_day, doctor_tz, unavailable_days)

    slot_length = timedelta(minutes=slot_duration_minutes)
    chunks = [
        chunk
        for day_windows in resolve_precedence(windows).values()
        for window in day_windows
        for chunk in partition_interval(window, slot_length)
        if query_window.contains(chunk)
    ]
    chunks.sort()

    booked = repository.list_booked_intervals(doctor_id, query_window.start, query_window.end)
    slots = [
        AvailableSlot(
            start=chunk.start.astimezone(requested_tz),
            end=chunk.end.astimezone(requested_tz),
            available=available,
        )
        for chunk, available in mark_booked(chunks, booked)
    ]

    logger.debug(
        'Resolved %d slots (%d booked) for doctor %s from %s to %s in %s',
        len(slots),
        sum(1 for slot in slots if not slot.available),
        doctor_id,
        from_date,
        to_date,
        requested_tz.zone,
    )
    return slots
