# src/recurctl/engine/generate.py

"""
Instance generation.

`advance` is the single place where a series cursor moves and where
`total_generated` grows. It is a pure function of a SeriesState: the
input is never mutated and at most one instance is produced per call.
Callers that want catch-up generation loop over it.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

from .model import SeriesState, TaskInstance, TaskStatus
from .ops import instance_id_for
from .recurrence import next_occurrence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Result object
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Advance:
    """
    Outcome of one generation step.
    """

    series: SeriesState
    instance: Optional[TaskInstance] = None

    @property
    def generated(self) -> bool:
        return self.instance is not None


# ---------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------

def advance(series: SeriesState) -> Advance:
    """
    Produce the next instance of `series`, if any, and the moved cursor.

    - Paused or ended series never generate.
    - A series that already produced `max_occurrences` instances ends.
    - Reaching `end_date` or the occurrence cap ends the series in the
      same step that produced its last instance.
    """
    if not series.is_active or series.next_due_date is None:
        return Advance(series=series)

    rule = series.rule
    cap = rule.max_occurrences

    if cap is not None and series.total_generated >= cap:
        logger.debug("series %s reached %d occurrences", series.series_id, cap)
        return Advance(series=_ended(series))

    due = series.next_due_date
    sequence = series.total_generated + 1

    instance = TaskInstance(
        instance_id=instance_id_for(series.series_id, sequence),
        user_id=series.user_id,
        recurring_series_id=series.series_id,
        template=series.template,
        due_date=due,
        sequence=sequence,
        status=TaskStatus.TODO,
    )

    nxt = next_occurrence(rule, due)
    if cap is not None and sequence >= cap:
        nxt = None

    updated = replace(
        series,
        last_generated_date=due,
        next_due_date=nxt,
        total_generated=sequence,
        is_active=nxt is not None,
    )

    logger.debug(
        "series %s generated #%d due %s, next %s",
        series.series_id,
        sequence,
        due.isoformat(),
        nxt.isoformat() if nxt else "none",
    )
    return Advance(series=updated, instance=instance)


def is_due(series: SeriesState, today: date) -> bool:
    """
    Return True if the series should produce an instance on or before `today`.
    """
    if not series.is_active or series.next_due_date is None:
        return False
    return series.next_due_date <= today


def _ended(series: SeriesState) -> SeriesState:
    return replace(series, is_active=False, next_due_date=None)
