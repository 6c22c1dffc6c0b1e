# src/recurctl/engine/model.py

"""
Core domain models.

This module defines the in-memory representations of recurrence rules,
recurring series and the task instances they produce, along with their
core invariants.

No storage access should happen here.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Optional


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class Pattern(str, Enum):
    """
    Recurrence unit of a rule.
    """

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(str, Enum):
    """
    Weekday token used by weekly rules.

    Indexing is Sunday-based (sun=0 .. sat=6) to match the week
    boundaries used for multi-week intervals.
    """

    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"

    @property
    def index(self) -> int:
        return _WEEKDAY_ORDER.index(self)

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def of(cls, d: date) -> "Weekday":
        """Return the weekday token of a calendar date."""
        return _WEEKDAY_ORDER[d.isoweekday() % 7]

    @classmethod
    def parse(cls, raw: "str | int | Weekday") -> "Weekday":
        """
        Parse a weekday token.

        Accepts tokens ("mon"), full names ("Monday") and
        Sunday-based indices (0-6).
        """
        if isinstance(raw, Weekday):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"Invalid weekday: {raw!r}")
        if isinstance(raw, int):
            if 0 <= raw <= 6:
                return _WEEKDAY_ORDER[raw]
            raise ValueError(f"Weekday index out of range: {raw}")
        s = str(raw).strip().lower()
        for day in cls:
            if s in (day.value, _FULL_NAMES[day]):
                return day
        raise ValueError(f"Invalid weekday: {raw!r}")


_WEEKDAY_ORDER: tuple[Weekday, ...] = (
    Weekday.SUN,
    Weekday.MON,
    Weekday.TUE,
    Weekday.WED,
    Weekday.THU,
    Weekday.FRI,
    Weekday.SAT,
)

_FULL_NAMES: dict[Weekday, str] = {
    Weekday.SUN: "sunday",
    Weekday.MON: "monday",
    Weekday.TUE: "tuesday",
    Weekday.WED: "wednesday",
    Weekday.THU: "thursday",
    Weekday.FRI: "friday",
    Weekday.SAT: "saturday",
}


class TaskStatus(str, Enum):
    """
    Lifecycle status of a single task instance.
    """

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_pending(self) -> bool:
        return self in (TaskStatus.TODO, TaskStatus.IN_PROGRESS)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SeriesStatus(str, Enum):
    """
    Derived lifecycle state of a series.

    active <-> paused (cursor preserved), either -> ended (terminal).
    """

    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


# ---------------------------------------------------------------------
# Recurrence rule
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    """
    How often a series repeats.

    Only the fields relevant to `pattern` are consulted: a weekly rule
    may carry a stale `day_of_month` which simply has no effect.

    `days_of_week` is None when no explicit days were requested.
    """

    pattern: Pattern
    interval: int = 1
    days_of_week: Optional[frozenset[Weekday]] = None
    day_of_month: Optional[int] = None
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None

    @property
    def has_explicit_days(self) -> bool:
        return self.pattern is Pattern.WEEKLY and self.days_of_week is not None

    def sorted_days(self) -> list[Weekday]:
        """Return explicit weekdays in Sunday-based order."""
        return sorted(self.days_of_week or (), key=lambda d: d.index)


# ---------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TaskTemplate:
    """
    Fields copied from a series onto every instance it generates.
    """

    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    category: Optional[str] = None
    tags: tuple[str, ...] = ()
    estimated_minutes: Optional[int] = None


# ---------------------------------------------------------------------
# Task instance
# ---------------------------------------------------------------------

@dataclass(slots=True)
class TaskInstance:
    """
    One concrete task produced by a series for a specific due date.

    `recurring_series_id` is a plain identifier: the series owns its
    instances, never the other way round. The reference may dangle
    after the series is deleted without cascade.
    """

    instance_id: str
    user_id: str
    recurring_series_id: str
    template: TaskTemplate
    due_date: date
    sequence: int
    status: TaskStatus = TaskStatus.TODO
    completed_on: Optional[date] = None
    actual_minutes: Optional[int] = None
    version: int = 0

    @property
    def title(self) -> str:
        return self.template.title

    @property
    def is_completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED


# ---------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------

@dataclass(slots=True)
class SeriesState:
    """
    Persisted recurring-series record.

    Notes:
    - the cursor is (last_generated_date, next_due_date);
    - next_due_date is None once the series has ended, and an ended
      series is never active again;
    - total_completed <= total_generated, both never decrease.
    """

    series_id: str
    user_id: str
    template: TaskTemplate
    rule: RecurrenceRule
    created: date
    next_due_date: Optional[date]
    last_generated_date: Optional[date] = None
    is_active: bool = True
    total_generated: int = 0
    total_completed: int = 0

    # Optimistic concurrency token, owned by the store.
    version: int = 0

    # -----------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------

    def validate(self) -> None:
        """
        Validate core invariants independent of storage context.

        Rule field checks belong to the validate layer, not here.
        """
        if not self.series_id or not self.series_id.strip():
            raise ValueError("series_id must be a non-empty string")

        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id must be a non-empty string")

        if self.total_generated < 0 or self.total_completed < 0:
            raise ValueError("counters must be non-negative")

        if self.total_completed > self.total_generated:
            raise ValueError("total_completed must be <= total_generated")

        if self.next_due_date is None and self.is_active:
            raise ValueError("an ended series cannot be active")

    # -----------------------------------------------------------------
    # Convenience properties
    # -----------------------------------------------------------------

    @property
    def is_ended(self) -> bool:
        return self.next_due_date is None

    @property
    def state(self) -> SeriesStatus:
        if self.is_ended:
            return SeriesStatus.ENDED
        return SeriesStatus.ACTIVE if self.is_active else SeriesStatus.PAUSED


# ---------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class SeriesStats:
    """
    Aggregated statistics across all series of a user.

    `overall_completion_rate` is an integer percentage (0-100).
    """

    total_series: int = 0
    active_series: int = 0
    paused_series: int = 0
    ended_series: int = 0
    total_tasks_generated: int = 0
    total_tasks_completed: int = 0
    overall_completion_rate: int = 0


def completion_rate(completed: int, generated: int) -> int:
    """Return completed/generated as a rounded percentage, 0 if nothing generated."""
    if generated <= 0:
        return 0
    return round(completed * 100 / generated)


# ---------------------------------------------------------------------
# Ordering helpers
# ---------------------------------------------------------------------

def sort_series(series: Iterable[SeriesState]) -> list[SeriesState]:
    """
    Default ordering for a user's series: newest first, then id.
    """
    return sorted(series, key=lambda s: (s.created, s.series_id), reverse=True)


def sort_instances(instances: Iterable[TaskInstance]) -> list[TaskInstance]:
    """
    Default ordering for instances of a series: latest due date first.
    """
    return sorted(instances, key=lambda t: (t.due_date, t.sequence), reverse=True)
