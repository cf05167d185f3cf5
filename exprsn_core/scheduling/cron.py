"""
Cron Expressions
================

Parses and evaluates five-field cron expressions in a named time zone.

Supported syntax:
- minute hour day_of_month month day_of_week
- ``*``, lists ``1,15``, ranges ``1-5``, steps ``*/15`` and ``10-50/10``
- ``L`` in day_of_month for the last day of the month
- month names (JAN-DEC) and weekday names (SUN-SAT); weekday 7 is Sunday
- aliases ``@hourly``, ``@daily``, ``@weekly``, ``@monthly``, ``@yearly``

When both day_of_month and day_of_week are restricted, a day matches if
either matches.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Set, Union

import pytz

from exprsn_core.core.errors import ValidationError

TimeZone = Union[str, pytz.BaseTzInfo, None]

ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = {name.upper(): i for i, name in enumerate(calendar.month_abbr) if name}
WEEKDAY_NAMES = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}

# Search horizon for next_occurrence, in days
_HORIZON_DAYS = 366 * 5


class SchedulePresets:
    """Named cron expressions for common cadences"""

    EVERY_MINUTE = "* * * * *"
    EVERY_5_MINUTES = "*/5 * * * *"
    EVERY_15_MINUTES = "*/15 * * * *"
    EVERY_30_MINUTES = "*/30 * * * *"
    HOURLY = "0 * * * *"
    EVERY_2_HOURS = "0 */2 * * *"
    EVERY_6_HOURS = "0 */6 * * *"
    DAILY = "0 0 * * *"
    WEEKDAYS_9AM = "0 9 * * 1-5"
    WEEKLY = "0 0 * * 0"
    MONDAY_NOON = "0 12 * * 1"
    MONTHLY = "0 0 1 * *"
    YEARLY = "0 0 1 1 *"

    @classmethod
    def all(cls) -> Dict[str, str]:
        return {
            name.lower(): value
            for name, value in vars(cls).items()
            if name.isupper() and isinstance(value, str)
        }


def get_timezone(tz: TimeZone) -> pytz.BaseTzInfo:
    """pytz zone for a name or zone; None means UTC"""
    if tz is None:
        return pytz.utc
    if isinstance(tz, str):
        try:
            return pytz.timezone(tz)
        except pytz.UnknownTimeZoneError as e:
            raise ValidationError(f"Unknown time zone: {tz}") from e
    return tz


class CronExpression:
    """
    Parses and evaluates cron expressions.

    Examples:
    - "0 * * * *" : every hour
    - "*/15 * * * *" : every 15 minutes
    - "0 9-17 * * MON-FRI" : 9am-5pm weekdays
    - "0 18 L * *" : 6pm on the last day of every month

    Usage:
        expr = CronExpression("30 8 * * 1-5")
        expr.next_occurrence(datetime(2024, 3, 1, 12, 0), tz="Europe/Berlin")
    """

    def __init__(self, expression: str):
        self.source = expression
        self.expression = ALIASES.get(expression.strip().lower(), expression.strip())
        self.last_day = False
        self._parse(self.expression)

    def _parse(self, expression: str) -> None:
        parts = expression.split()
        if len(parts) != 5:
            raise ValidationError(
                f"Invalid cron expression: {expression}. "
                "Expected 5 fields (minute hour day month weekday)"
            )
        minute, hour, day, month, weekday = parts

        self.minutes = self._parse_field(minute, 0, 59, "minute")
        self.hours = self._parse_field(hour, 0, 23, "hour")
        self.months = self._parse_field(month, 1, 12, "month", MONTH_NAMES)

        day_parts = day.upper().split(",")
        if "L" in day_parts:
            self.last_day = True
            day_parts.remove("L")
        self.days = self._parse_field(",".join(day_parts), 1, 31, "day") if day_parts else set()

        weekdays = self._parse_field(weekday, 0, 7, "weekday", WEEKDAY_NAMES)
        self.weekdays = {0 if d == 7 else d for d in weekdays}

        self._day_restricted = not day.startswith("*")
        self._weekday_restricted = not weekday.startswith("*")

    def _parse_field(
        self,
        field: str,
        min_val: int,
        max_val: int,
        label: str,
        names: Optional[Dict[str, int]] = None,
    ) -> Set[int]:
        """Parse a single cron field"""
        values: Set[int] = set()

        for part in field.split(","):
            if not part:
                raise ValidationError(f"Empty {label} value in cron expression")

            step = 1
            if "/" in part:
                part, _, step_text = part.partition("/")
                step = self._number(step_text, label)
                if step < 1:
                    raise ValidationError(f"Invalid {label} step: {step_text}")

            if part == "*":
                start, end = min_val, max_val
            elif "-" in part:
                low, _, high = part.partition("-")
                start, end = self._value(low, label, names), self._value(high, label, names)
            else:
                start = self._value(part, label, names)
                end = max_val if step > 1 else start

            if start < min_val or end > max_val or start > end:
                raise ValidationError(f"{label.capitalize()} value out of range [{min_val}-{max_val}]: {part}")
            values.update(range(start, end + 1, step))

        return values

    @staticmethod
    def _number(text: str, label: str) -> int:
        try:
            return int(text)
        except ValueError as e:
            raise ValidationError(f"Invalid {label} value: {text}") from e

    def _value(self, text: str, label: str, names: Optional[Dict[str, int]]) -> int:
        if names and text.upper() in names:
            return names[text.upper()]
        return self._number(text, label)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def _day_matches(self, day: date) -> bool:
        in_days = day.day in self.days or (
            self.last_day and day.day == calendar.monthrange(day.year, day.month)[1]
        )
        in_weekdays = (day.weekday() + 1) % 7 in self.weekdays

        if self._day_restricted and self._weekday_restricted:
            return in_days or in_weekdays
        if self._day_restricted:
            return in_days
        if self._weekday_restricted:
            return in_weekdays
        return True

    def matches(self, dt: datetime) -> bool:
        """Check if a wall-clock datetime matches the expression"""
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt.date())
        )

    def next_occurrence(self, after: Optional[datetime] = None, tz: TimeZone = None) -> datetime:
        """
        First matching instant strictly after ``after``.

        ``after`` is naive UTC or timezone-aware. The result is aware, in ``tz``.
        Wall-clock times skipped by a DST change never fire; repeated ones fire once.
        """
        zone = get_timezone(tz)
        if after is None:
            after = datetime.utcnow()
        if after.tzinfo is None:
            after = pytz.utc.localize(after)

        local = after.astimezone(zone).replace(tzinfo=None)
        start = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)

        day = start.date()
        for _ in range(_HORIZON_DAYS):
            if day.month in self.months and self._day_matches(day):
                for hour in hours:
                    for minute in minutes:
                        naive = datetime(day.year, day.month, day.day, hour, minute)
                        if naive < start:
                            continue
                        candidate = _localize(zone, naive)
                        if candidate is not None and candidate > after:
                            return candidate
            day += timedelta(days=1)

        raise ValidationError(f"No next occurrence found for {self.source}")

    def next_occurrences(
        self,
        count: int,
        after: Optional[datetime] = None,
        tz: TimeZone = None,
    ) -> List[datetime]:
        found = []
        current = after
        for _ in range(count):
            current = self.next_occurrence(current, tz)
            found.append(current)
        return found

    def describe(self) -> str:
        return describe(self.source)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CronExpression) and other.expression == self.expression

    def __hash__(self) -> int:
        return hash(self.expression)

    def __repr__(self) -> str:
        return f"CronExpression({self.source!r})"


def _localize(zone: pytz.BaseTzInfo, naive: datetime) -> Optional[datetime]:
    try:
        return zone.localize(naive, is_dst=None)
    except pytz.NonExistentTimeError:
        return None
    except pytz.AmbiguousTimeError:
        return zone.localize(naive, is_dst=True)


def validate_cron(expression: str) -> bool:
    try:
        CronExpression(expression)
    except ValidationError:
        return False
    return True


# =============================================================================
# DESCRIPTIONS & BUILDERS
# =============================================================================


_COMMON_DESCRIPTIONS = {
    "* * * * *": "Every minute",
    "*/5 * * * *": "Every 5 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 * * * *": "Every hour",
    "0 */2 * * *": "Every 2 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 0 * * *": "Daily at midnight",
    "0 0 * * 0": "Weekly on Sunday at midnight",
    "0 12 * * 1": "Weekly on Monday at noon",
    "0 0 1 * *": "Monthly on the 1st at midnight",
    "0 0 1 1 *": "Yearly on January 1st at midnight",
    "0 9 * * 1-5": "Weekdays at 9:00 AM",
}


def describe(expression: str) -> str:
    """Human-readable description of a cron expression"""
    normalized = ALIASES.get(expression.strip().lower(), " ".join(expression.split()))
    if normalized in _COMMON_DESCRIPTIONS:
        return _COMMON_DESCRIPTIONS[normalized]

    parts = normalized.split()
    if len(parts) != 5:
        return "Invalid cron expression"
    minute, hour, day, month, weekday = parts

    if minute == "*":
        text = "At every minute"
    elif minute.startswith("*/"):
        text = f"At every {minute[2:]} minutes"
    else:
        text = f"At minute {minute}"

    if hour != "*":
        text += f", every {hour[2:]} hours" if hour.startswith("*/") else f", hour {hour}"
    if day == "L":
        text += ", on the last day of the month"
    elif day != "*":
        text += f", day {day}"
    if month != "*":
        text += f", month {month}"
    if weekday != "*":
        text += f", day of week {weekday}"
    return text


def daily_at(hour: int, minute: int = 0) -> str:
    """Every day at hour:minute"""
    return CronExpression(f"{minute} {hour} * * *").expression


def weekly_on(weekday: Union[int, str], hour: int = 0, minute: int = 0) -> str:
    """Every week on ``weekday`` (0/7 = Sunday, or a name such as "MON")"""
    return CronExpression(f"{minute} {hour} * * {weekday}").expression


def monthly_on(day: Union[int, str], hour: int = 0, minute: int = 0) -> str:
    """Every month on ``day`` (1-31, or "L" for the last day)"""
    return CronExpression(f"{minute} {hour} {day} * *").expression
