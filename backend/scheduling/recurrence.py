"""Rule expansion.

Both rule sources are carried as one ``AvailabilityRule`` tagged with its
``RuleSource``. Expansion yields the calendar days a rule applies to inside a
bounded span, lazily, so an open-ended recurrence never iterates past the
query.
"""

import calendar
import enum
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, time, timedelta

from backend.models.availability import RecurrenceType


class RuleSource(str, enum.Enum):
    TEMPLATE = "template"
    DATE = "date"


@dataclass(frozen=True)
class AvailabilityRule:
    source: RuleSource
    start_time: time
    end_time: time
    day_of_week: int | None = None  # 0=Sunday .. 6=Saturday, templates only
    anchor_date: date | None = None
    recurrence: RecurrenceType = RecurrenceType.NONE
    recurrence_end: date | None = None
    is_active: bool = True

    @property
    def window_length_minutes(self) -> int:
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return end - start

    def can_intersect(self, first_day: date, last_day: date) -> bool:
        if not self.is_active or self.start_time >= self.end_time:
            return False
        if self.source is RuleSource.TEMPLATE:
            return True
        if self.anchor_date is None or self.anchor_date > last_day:
            return False
        if self.recurrence_end is not None and self.recurrence_end < max(first_day, self.anchor_date):
            return False
        return True


def sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _expand_template(rule: AvailabilityRule, first_day: date, last_day: date) -> Iterator[date]:
    offset = (rule.day_of_week - sunday_based_weekday(first_day)) % 7
    current = first_day + timedelta(days=offset)
    while current <= last_day:
        yield current
        current += timedelta(days=7)


def _expand_stepped(anchor: date, step_days: int, first_day: date, last_day: date) -> Iterator[date]:
    current = anchor
    if current < first_day:
        steps = -(-(first_day - anchor).days // step_days)
        current = anchor + timedelta(days=steps * step_days)
    while current <= last_day:
        yield current
        current += timedelta(days=step_days)


def _expand_monthly(anchor: date, first_day: date, last_day: date) -> Iterator[date]:
    # Months without the anchor's day-of-month are skipped, not clamped.
    year, month = anchor.year, anchor.month
    if (first_day.year, first_day.month) > (year, month):
        year, month = first_day.year, first_day.month
    while (year, month) <= (last_day.year, last_day.month):
        if anchor.day <= calendar.monthrange(year, month)[1]:
            candidate = date(year, month, anchor.day)
            if first_day <= candidate <= last_day:
                yield candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1


def expand_rule(rule: AvailabilityRule, first_day: date, last_day: date) -> Iterator[date]:
    """Yield each day in [first_day, last_day] on which ``rule`` applies, in order."""
    if not rule.can_intersect(first_day, last_day):
        return

    if rule.source is RuleSource.TEMPLATE:
        yield from _expand_template(rule, first_day, last_day)
        return

    anchor = rule.anchor_date
    if rule.recurrence_end is not None:
        last_day = min(last_day, rule.recurrence_end)

    if rule.recurrence is RecurrenceType.NONE:
        if first_day <= anchor <= last_day:
            yield anchor
    elif rule.recurrence is RecurrenceType.DAILY:
        yield from _expand_stepped(anchor, 1, first_day, last_day)
    elif rule.recurrence is RecurrenceType.WEEKLY:
        yield from _expand_stepped(anchor, 7, first_day, last_day)
    elif rule.recurrence is RecurrenceType.MONTHLY:
        yield from _expand_monthly(anchor, first_day, last_day)
    else:
        raise ValueError(f'Unsupported recurrence type: {rule.recurrence}')
