"""
Cron expression parsing, next-fire computation and human descriptions.

Only classic 5-field expressions (minute hour day-of-month month day-of-week)
are accepted; croniter's seconds/year extensions are rejected.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from croniter import croniter

from foreman.errors import InvalidScheduleExpression

UTC = timezone.utc

DAY_NAME_TO_CRON = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
MONTH_NAME_TO_NUM = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")

# (name, min, max, named tokens)
FIELDS: List[Tuple[str, int, int, Optional[Dict[str, int]]]] = [
    ("minute", 0, 59, None),
    ("hour", 0, 23, None),
    ("day_of_month", 1, 31, None),
    ("month", 1, 12, MONTH_NAME_TO_NUM),
    ("day_of_week", 0, 7, DAY_NAME_TO_CRON),
]


def parse_cron(expr: object) -> str:
    """Validate a cron expression and return it with normalized whitespace.

    Raises:
        InvalidScheduleExpression: if the expression is not exactly five
            valid cron fields.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise InvalidScheduleExpression("Error: cron expression must be a non-empty string.")
    parts = expr.split()
    if len(parts) != len(FIELDS):
        raise InvalidScheduleExpression(
            f'Error: cron expression "{expr}" must have exactly 5 fields, got {len(parts)}.'
        )
    for part, field in zip(parts, FIELDS):
        check_field(expr, part, *field)
    normalized = " ".join(parts)
    if not croniter.is_valid(normalized):
        raise InvalidScheduleExpression(f'Error: Invalid cron expression "{expr}".')
    return normalized


def is_valid_cron(expr: object) -> bool:
    try:
        parse_cron(expr)
    except InvalidScheduleExpression:
        return False
    return True


def check_field(
    expr: str,
    raw: str,
    field_name: str,
    min_value: int,
    max_value: int,
    names: Optional[Dict[str, int]] = None,
) -> None:
    """Check one field: ``*``, numbers, ranges and steps, separated by commas.

    Month and day-of-week fields also take three-letter names, which are
    swapped for their numbers before the bounds check.
    """

    def invalid(reason: str) -> InvalidScheduleExpression:
        return InvalidScheduleExpression(f'Error: Invalid cron expression "{expr}": {field_name} {reason}.')

    def to_number(match: re.Match[str]) -> str:
        if names is None or match.group(0) not in names:
            raise invalid(f'has unknown name "{match.group(0)}"')
        return str(names[match.group(0)])

    token = re.sub(r"[a-z]+", to_number, raw.lower())
    if not CRON_FIELD_RE.match(token):
        raise invalid(f'"{raw}" has unsupported characters')

    span = max_value - min_value + 1
    for item in token.split(","):
        base, slash, step = item.partition("/")
        if slash:
            if not step.isdigit() or int(step) == 0:
                raise invalid(f'step "{item}" must be a positive integer')
            if int(step) > span:
                raise invalid(f'step "{item}" is larger than {min_value}-{max_value}')
        if base == "*":
            continue
        first, dash, last = base.partition("-")
        if not first.isdigit() or (dash and not last.isdigit()):
            raise invalid(f'"{item}" is not a number or range')
        start = int(first)
        end = int(last) if dash else start
        if start < min_value or end > max_value:
            raise invalid(f'"{item}" is outside {min_value}-{max_value}')
        if start > end:
            raise invalid(f'range "{base}" runs backwards')


def next_fire_after(expr: str, after: datetime, tz: ZoneInfo) -> datetime:
    """Next fire time strictly after ``after``, evaluated in ``tz``, returned in UTC."""
    local_after = _ensure_aware_utc(after).astimezone(tz)
    nxt = croniter(expr, local_after).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=tz)
    return nxt.astimezone(UTC)


def next_fire_times(expr: str, count: int, tz: ZoneInfo, now: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = next_fire_after(expr, cursor, tz)
        runs.append(cursor)
        cursor = cursor + timedelta(seconds=1)
    return runs


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def describe_cron(expr: str) -> str:
    """Short English rendering of common schedules; anything else is returned as-is."""
    parts = expr.split()
    if len(parts) != 5:
        return expr
    minute, hour, day_of_month, month, day_of_week = parts
    every_day = day_of_month == "*" and month == "*"

    if all(part == "*" for part in parts):
        return "Every minute"
    if minute.startswith("*/") and minute[2:].isdigit() and hour == "*" and every_day and day_of_week == "*":
        interval = int(minute[2:])
        return f"Every {interval} minute{'s' if interval > 1 else ''}"
    if minute.isdigit() and hour == "*" and every_day and day_of_week == "*":
        return f"Every hour at {minute.zfill(2)} minutes past"
    if minute.isdigit() and hour.isdigit() and every_day:
        time_text = f"{hour.zfill(2)}:{minute.zfill(2)}"
        if day_of_week == "*":
            if minute == "0" and hour == "0":
                return "Every day at midnight"
            return f"Every day at {time_text}"
        days = _day_names(day_of_week)
        if days is not None:
            return f"Every {days} at {time_text}"
    return expr


def _day_names(day_of_week: str) -> Optional[str]:
    names: List[str] = []
    for token in day_of_week.split(","):
        if not token.isdigit() or int(token) > 7:
            return None
        names.append(DAY_NAMES[int(token) % 7])
    return ", ".join(names)
