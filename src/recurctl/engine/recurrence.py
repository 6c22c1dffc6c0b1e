# src/recurctl/engine/recurrence.py

"""
Occurrence arithmetic and rule formatting.

Pure functions only: no storage, no clock.

Month and year steps use dateutil's relativedelta, which clamps to the
end of the target month (Jan 31 + 1 month = Feb 28/29) instead of
rolling over into the next month.
"""

from datetime import date, timedelta
from typing import Final, Optional

from dateutil.relativedelta import relativedelta

from .model import Pattern, RecurrenceRule, Weekday


# ---------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------

DAYS_PER_WEEK: Final[int] = 7


# ---------------------------------------------------------------------
# Next occurrence
# ---------------------------------------------------------------------

def next_occurrence(rule: RecurrenceRule, current: date) -> Optional[date]:
    """
    Return the occurrence following `current`, or None past `end_date`.

    `max_occurrences` is not consulted here: it needs the running
    count that only the series holds.
    """
    if rule.pattern is Pattern.DAILY:
        nxt = current + timedelta(days=rule.interval)
    elif rule.pattern is Pattern.WEEKLY:
        nxt = _next_weekly(rule, current)
    elif rule.pattern is Pattern.MONTHLY:
        nxt = _next_monthly(rule, current)
    elif rule.pattern is Pattern.YEARLY:
        nxt = current + relativedelta(years=rule.interval)
    else:
        raise ValueError(f"Unknown pattern: {rule.pattern!r}")

    if rule.end_date is not None and nxt > rule.end_date:
        return None

    return nxt


def week_start(d: date) -> date:
    """Return the Sunday that starts the week containing `d`."""
    return d - timedelta(days=Weekday.of(d).index)


def _next_weekly(rule: RecurrenceRule, current: date) -> date:
    fallback = current + timedelta(days=DAYS_PER_WEEK * rule.interval)

    if not rule.days_of_week:
        return fallback

    anchor_week = week_start(current)
    limit = DAYS_PER_WEEK * rule.interval + DAYS_PER_WEEK

    # Bounded scan: a configuration that never matches degrades to the
    # plain weekly step instead of looping.
    for offset in range(1, limit + 1):
        candidate = current + timedelta(days=offset)
        if Weekday.of(candidate) not in rule.days_of_week:
            continue

        weeks = (week_start(candidate) - anchor_week).days // DAYS_PER_WEEK
        if weeks % rule.interval == 0:
            return candidate

    return fallback


def _next_monthly(rule: RecurrenceRule, current: date) -> date:
    if rule.day_of_month is None:
        return current + relativedelta(months=rule.interval)

    # relativedelta's absolute day clamps to the last day of the month.
    return current + relativedelta(months=rule.interval, day=rule.day_of_month)


# ---------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------

_UNITS: Final[dict[Pattern, str]] = {
    Pattern.DAILY: "day",
    Pattern.WEEKLY: "week",
    Pattern.MONTHLY: "month",
    Pattern.YEARLY: "year",
}


def ordinal(n: int) -> str:
    """Return 1st, 2nd, 3rd, 4th ... 11th, 12th, 13th, 21st ..."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_rule(rule: RecurrenceRule) -> str:
    """
    Human-readable description of a rule.

    Examples:
      Every day
      Every 2 weeks on Mon, Wed, Fri
      Every month on the 31st, until 2026-12-31
      Every year, 5 times
    """
    unit = _UNITS[rule.pattern]
    if rule.interval == 1:
        text = f"Every {unit}"
    else:
        text = f"Every {rule.interval} {unit}s"

    if rule.pattern is Pattern.WEEKLY and rule.days_of_week:
        text += " on " + ", ".join(d.label for d in rule.sorted_days())
    elif rule.pattern is Pattern.MONTHLY and rule.day_of_month is not None:
        text += f" on the {ordinal(rule.day_of_month)}"

    if rule.end_date is not None:
        text += f", until {rule.end_date.isoformat()}"

    if rule.max_occurrences is not None:
        times = "time" if rule.max_occurrences == 1 else "times"
        text += f", {rule.max_occurrences} {times}"

    return text
