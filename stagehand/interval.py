"""
Cron-like interval expressions.

An expression has five whitespace-separated fields, ``minute hour day month
weekday``, each either ``*`` or a comma-separated list of numbers. Weekdays
run from 1 (Monday) to 7 (Sunday). When both a day-of-month list and a
weekday list are given, the day-of-month list wins and the weekdays are
ignored when computing the next run.

The next run is found by walking a candidate instant forward one field at a
time (minute, hour, day or weekday, month). A field that has no allowed value
at or after the candidate's current value wraps to its first value and
carries into the next coarser unit. Every carry is expressed as a timedelta,
so month lengths are handled by clamping to the last day of the month.
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Tuple

from stagehand.errors import InvalidIntervalExpression

logger = logging.getLogger(__name__)
UTC = timezone.utc
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

FIELD_RE = re.compile(r"^(\*|[0-9]+(,[0-9]+)*)$")
FIELD_BOUNDS: Tuple[Tuple[str, int, int], ...] = (
    ("minutes", 0, 59),
    ("hours", 0, 23),
    ("days", 1, 31),
    ("months", 1, 12),
    ("weekdays", 1, 7),
)


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Interval:
    expression: str
    minutes: Tuple[int, ...] = ()
    hours: Tuple[int, ...] = ()
    days: Tuple[int, ...] = ()
    months: Tuple[int, ...] = ()
    weekdays: Tuple[int, ...] = ()

    @classmethod
    def parse(cls, expression: str) -> "Interval":
        if not isinstance(expression, str):
            raise InvalidIntervalExpression(repr(expression))

        tokens = expression.split()
        if len(tokens) != len(FIELD_BOUNDS):
            raise InvalidIntervalExpression(expression)
        if not all(FIELD_RE.match(token) for token in tokens):
            raise InvalidIntervalExpression(expression)

        values = [_parse_field(token) for token in tokens]
        for (_, minimum, maximum), numbers in zip(FIELD_BOUNDS, values):
            if any(number < minimum or number > maximum for number in numbers):
                raise InvalidIntervalExpression(expression)

        minutes, hours, days, months, weekdays = values
        return cls(
            expression=expression,
            minutes=minutes,
            hours=hours,
            days=days,
            months=months,
            weekdays=weekdays,
        )

    def __str__(self) -> str:
        return " ".join(
            str(list(getattr(self, name))) for name, _, _ in FIELD_BOUNDS
        )

    def should_run(self, previous: datetime, now: datetime) -> bool:
        nxt = self.next_run(previous)
        should = nxt <= ensure_aware_utc(now)
        logger.debug(
            "Interval %s (%s): previous=%s next=%s now=%s should_run=%s",
            self.expression,
            self,
            ensure_aware_utc(previous).isoformat(),
            nxt.isoformat(),
            ensure_aware_utc(now).isoformat(),
            should,
        )
        return should

    def next_run(self, previous: datetime) -> datetime:
        candidate = ensure_aware_utc(previous).replace(second=0, microsecond=0)
        candidate += timedelta(minutes=1)
        candidate = self._next_minute_or_carry_hour(candidate)
        candidate = self._next_hour_or_carry_day(candidate)
        candidate = self._next_day_or_carry_month(candidate)
        candidate = self._next_month_or_carry_year(candidate)
        return candidate

    def upcoming(self, after: datetime, count: int) -> List[datetime]:
        runs: List[datetime] = []
        cursor = after
        for _ in range(count):
            cursor = self.next_run(cursor)
            runs.append(cursor)
        return runs

    def _next_minute_or_carry_hour(self, candidate: datetime) -> datetime:
        if not self.minutes:
            return candidate
        minute, wrapped = _next_allowed(self.minutes, candidate.minute)
        candidate = candidate.replace(minute=minute)
        return candidate + timedelta(hours=1) if wrapped else candidate

    def _next_hour_or_carry_day(self, candidate: datetime) -> datetime:
        if not self.hours:
            return candidate
        hour, wrapped = _next_allowed(self.hours, candidate.hour)
        candidate = candidate.replace(hour=hour)
        return candidate + timedelta(days=1) if wrapped else candidate

    def _next_day_or_carry_month(self, candidate: datetime) -> datetime:
        # One pass serves both fields; a day-of-month list shadows weekdays.
        if self.days:
            day, wrapped = _next_allowed(self.days, candidate.day)
            month = candidate.month + 1 if wrapped else candidate.month
            delta = days_to_safe_date(candidate, candidate.year, month, day)
        elif self.weekdays:
            current = candidate.isoweekday()
            weekday, _ = _next_allowed(self.weekdays, current)
            delta = days_to_weekday(current, weekday)
        else:
            return candidate
        return candidate + timedelta(days=delta)

    def _next_month_or_carry_year(self, candidate: datetime) -> datetime:
        if not self.months:
            return candidate
        month, wrapped = _next_allowed(self.months, candidate.month)
        year = candidate.year + 1 if wrapped else candidate.year
        delta = days_to_safe_date(candidate, year, month, candidate.day)
        return candidate + timedelta(days=delta)


def _parse_field(token: str) -> Tuple[int, ...]:
    if token == "*":
        return ()
    return tuple(sorted({int(part) for part in token.split(",")}))


def _next_allowed(allowed: Tuple[int, ...], current: int) -> Tuple[int, bool]:
    for value in allowed:
        if value >= current:
            return value, False
    return allowed[0], True


def days_to_weekday(current: int, target: int) -> int:
    """Days from ISO weekday ``current`` forward to ISO weekday ``target``."""
    return ((target + 7) - current) % 7


def days_to_safe_date(candidate: datetime, year: int, month: int, day: int) -> int:
    """
    Whole days from ``candidate`` to ``year-month-day``.

    ``month`` may be 13, meaning January of the following year. A ``day``
    past the end of the month is clamped to the month's last day.
    """
    if month > 12:
        year += 1
        month -= 12
    last_day = last_day_of_month(year, month)
    target = date(year, month, min(day, last_day))
    return (target - candidate.date()).days


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]

