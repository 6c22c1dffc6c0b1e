# src/recurctl/engine/manager.py

"""
Series lifecycle operations.

This module contains *all* state-changing operations on series and
their instances: creation, pause / resume, deletion, completion
accounting and generation passes.

Design principles:
- Every mutation is one read-modify-write inside store.transact();
  concurrent writers are detected and the whole step is retried.
- Counters only move here (through generate.advance and completion
  accounting), which keeps total_completed <= total_generated.
- Validation errors are raised early, before anything is written.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import date
from typing import Callable, Iterable, Optional, TypeVar

from .config import Settings
from .generate import Advance, advance, is_due
from .model import (
    RecurrenceRule,
    SeriesState,
    SeriesStats,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
    completion_rate,
    sort_instances,
    sort_series,
)
from .ops import index_record, instance_to_record, new_series_id, series_id_of, series_to_record
from .parse import parse_instance, parse_series
from .store import (
    BaseStore,
    ConcurrencyConflict,
    NotFoundError,
    OperationCancelled,
    Transaction,
    retry_operation,
)
from .validate import ValidationError, validate_rule, validate_series, validate_template

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------

SERIES_COLLECTION = "recurring_series"
TASKS_COLLECTION = "tasks"
INDEX_COLLECTION = "series_instances"


class SeriesLifecycleManager:
    """
    Entry point for every mutating or aggregating series operation.
    """

    def __init__(
        self,
        store: BaseStore,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], date] = date.today,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock
        self._sleep = sleep

    # -----------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------

    def create_series(
        self,
        user_id: str,
        template: TaskTemplate,
        rule: RecurrenceRule,
        start_date: Optional[date] = None,
    ) -> Advance:
        """
        Create a series and its first instance.

        Returns the generation step: the stored series and the first
        instance (None only if the rule forbids any occurrence).
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")

        start = start_date or self._clock()
        validate_series(template, rule, start_date=start).raise_for_issues()

        created = self._clock()

        def fn(txn: Transaction) -> Advance:
            series_id = new_series_id(self._taken_series_ids(), created, template.title)

            if txn.get(SERIES_COLLECTION, series_id) is not None:
                raise ConcurrencyConflict(f"series id {series_id} taken")

            series = SeriesState(
                series_id=series_id,
                user_id=user_id,
                template=template,
                rule=rule,
                created=created,
                next_due_date=start,
                is_active=True,
            )

            step = advance(series)
            self._write_step(txn, step, index=[])
            return step

        step = self._transact(fn)
        logger.info("created series %s for %s", step.series.series_id, user_id)
        return step

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get_series(self, series_id: str) -> SeriesState:
        record = self._call(lambda: self._store.get(SERIES_COLLECTION, series_id))
        if record is None:
            raise NotFoundError(f"Series not found: {series_id}")
        return parse_series(record, path=f"{SERIES_COLLECTION}/{series_id}")

    def get_instance(self, instance_id: str) -> TaskInstance:
        record = self._call(lambda: self._store.get(TASKS_COLLECTION, instance_id))
        if record is None:
            raise NotFoundError(f"Task not found: {instance_id}")
        return parse_instance(record, path=f"{TASKS_COLLECTION}/{instance_id}")

    def list_series(self, user_id: str, *, active_only: bool = False) -> list[SeriesState]:
        """
        All series of a user, newest first.
        """
        records = self._call(lambda: list(self._store.scan(SERIES_COLLECTION)))

        out: list[SeriesState] = []
        for record_id, record in records:
            if record.get("user_id") != user_id:
                continue
            series = parse_series(record, path=f"{SERIES_COLLECTION}/{record_id}")
            if active_only and not series.is_active:
                continue
            out.append(series)

        return sort_series(out)

    def instances_for_series(self, series_id: str) -> list[TaskInstance]:
        """
        Instances of a series, latest due date first.
        """
        record = self._call(lambda: self._store.get(INDEX_COLLECTION, series_id))
        ids = _index_ids(record)

        out: list[TaskInstance] = []
        for instance_id in ids:
            rec = self._call(lambda: self._store.get(TASKS_COLLECTION, instance_id))
            if rec is not None:
                out.append(parse_instance(rec, path=f"{TASKS_COLLECTION}/{instance_id}"))

        return sort_instances(out)

    def stats_for_user(self, user_id: str) -> SeriesStats:
        """
        Aggregate counters across every series of a user.
        """
        active = paused = ended = generated = completed = 0
        all_series = self.list_series(user_id)

        for series in all_series:
            if series.is_ended:
                ended += 1
            elif series.is_active:
                active += 1
            else:
                paused += 1
            generated += series.total_generated
            completed += series.total_completed

        return SeriesStats(
            total_series=len(all_series),
            active_series=active,
            paused_series=paused,
            ended_series=ended,
            total_tasks_generated=generated,
            total_tasks_completed=completed,
            overall_completion_rate=completion_rate(completed, generated),
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def pause(self, series_id: str) -> SeriesState:
        """
        Stop generation; the cursor is left untouched.
        """

        def fn(txn: Transaction) -> SeriesState:
            series = _load_series(txn, series_id)
            if series.is_active:
                series.is_active = False
                txn.put(SERIES_COLLECTION, series_id, series_to_record(series))
            return series

        series = self._transact(fn)
        logger.info("paused series %s", series_id)
        return series

    def resume(self, series_id: str) -> SeriesState:
        """
        Continue generation from the stored cursor.

        An ended series stays ended: resuming it is accepted as a no-op.
        """

        def fn(txn: Transaction) -> SeriesState:
            series = _load_series(txn, series_id)
            if series.is_ended:
                logger.debug("resume ignored, series %s has ended", series_id)
                return series
            if not series.is_active:
                series.is_active = True
                txn.put(SERIES_COLLECTION, series_id, series_to_record(series))
            return series

        series = self._transact(fn)
        if series.is_active:
            logger.info("resumed series %s", series_id)
        return series

    def update_template(self, series_id: str, **changes: object) -> SeriesState:
        """
        Change fields copied onto future instances.

        Existing instances are not touched.
        """

        def fn(txn: Transaction) -> SeriesState:
            series = _load_series(txn, series_id)
            try:
                template = replace(series.template, **changes)
            except TypeError as e:
                raise ValidationError(f"Unknown template field: {e}") from e

            validate_template(template).raise_for_issues()
            series.template = template
            txn.put(SERIES_COLLECTION, series_id, series_to_record(series))
            return series

        return self._transact(fn)

    def update_rule(self, series_id: str, rule: RecurrenceRule) -> SeriesState:
        """
        Replace the recurrence rule; affects occurrences after the cursor.

        The pending next due date is kept; an ended series stays ended.
        """

        def fn(txn: Transaction) -> SeriesState:
            series = _load_series(txn, series_id)
            validate_rule(rule, start_date=series.next_due_date).raise_for_issues()
            series.rule = rule
            txn.put(SERIES_COLLECTION, series_id, series_to_record(series))
            return series

        return self._transact(fn)

    def delete_series(
        self,
        series_id: str,
        *,
        cascade: bool = False,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Delete a series; return the number of instances deleted with it.

        Without `cascade` the instances stay and keep their (now dangling)
        recurring_series_id. With `cascade`, instances are deleted one by
        one; `cancel` / `timeout` are checked between deletions and raise
        OperationCancelled, leaving the series and remaining instances.
        """
        self.get_series(series_id)

        deleted = 0
        if cascade:
            deadline = None if timeout is None else time.monotonic() + timeout
            ids = self._cascade_ids(series_id)

            for i, instance_id in enumerate(ids):
                if _interrupted(cancel, deadline):
                    self._prune_index(series_id, ids[:i])
                    logger.warning(
                        "cascade delete of %s interrupted after %d instance(s)",
                        series_id,
                        deleted,
                    )
                    raise OperationCancelled(
                        f"Deletion of series {series_id} interrupted",
                        completed=deleted,
                    )

                self._call(lambda: self._store.delete(TASKS_COLLECTION, instance_id))
                deleted += 1

        def fn(txn: Transaction) -> int:
            extra = 0
            if txn.get(SERIES_COLLECTION, series_id) is None:
                raise NotFoundError(f"Series not found: {series_id}")

            if cascade:
                # Instances generated while the cascade was running.
                for instance_id in _index_ids(txn.get(INDEX_COLLECTION, series_id)):
                    if txn.get(TASKS_COLLECTION, instance_id) is not None:
                        txn.delete(TASKS_COLLECTION, instance_id)
                        extra += 1

            txn.delete(SERIES_COLLECTION, series_id)
            txn.delete(INDEX_COLLECTION, series_id)
            return extra

        deleted += self._transact(fn)
        logger.info("deleted series %s (cascade=%s, instances=%d)", series_id, cascade, deleted)
        return deleted

    # -----------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------

    def generate_next(self, series_id: str) -> Advance:
        """
        Run one generation step for a series and persist its outcome.
        """

        def fn(txn: Transaction) -> Advance:
            series = _load_series(txn, series_id)
            step = advance(series)
            if step.series != series:
                index = _index_ids(txn.get(INDEX_COLLECTION, series_id))
                self._write_step(txn, step, index=index)
            return step

        step = self._transact(fn)
        if step.series.is_ended:
            logger.info("series %s has ended", series_id)
        return step

    def sweep(self, user_id: str, today: Optional[date] = None) -> int:
        """
        Generate due instances for a user's active series.

        A series gets one new instance when its next due date is on or
        before `today` and none of its instances is still pending.
        Returns the number of instances generated.
        """
        today = today or self._clock()
        generated = 0

        for series in self.list_series(user_id, active_only=True):
            if not is_due(series, today):
                continue

            if any(t.status.is_pending for t in self.instances_for_series(series.series_id)):
                continue

            def fn(txn: Transaction, series_id: str = series.series_id) -> Optional[TaskInstance]:
                current = _load_series(txn, series_id)
                if not is_due(current, today):
                    return None
                step = advance(current)
                index = _index_ids(txn.get(INDEX_COLLECTION, series_id))
                self._write_step(txn, step, index=index)
                return step.instance

            if self._transact(fn) is not None:
                generated += 1

        logger.info("sweep for %s generated %d instance(s)", user_id, generated)
        return generated

    # -----------------------------------------------------------------
    # Instances
    # -----------------------------------------------------------------

    def complete_instance(
        self,
        instance_id: str,
        *,
        actual_minutes: Optional[int] = None,
        generate_next: bool = True,
    ) -> Optional[TaskInstance]:
        """
        Mark an instance completed and account for it on its series.

        The series counter moves only if the instance was not already
        completed, so retries never double-count. When the series is
        still active, its next instance is generated and returned.
        """
        if actual_minutes is not None and actual_minutes < 1:
            raise ValidationError("actual_minutes must be >= 1")

        def fn(txn: Transaction) -> Optional[TaskInstance]:
            instance = _load_instance(txn, instance_id)
            if instance.is_completed:
                return None

            instance.status = TaskStatus.COMPLETED
            instance.completed_on = self._clock()
            if actual_minutes is not None:
                instance.actual_minutes = actual_minutes
            txn.put(TASKS_COLLECTION, instance_id, instance_to_record(instance))

            series_id = instance.recurring_series_id
            record = txn.get(SERIES_COLLECTION, series_id)
            if record is None:
                # Detached instance: the series was deleted without cascade.
                return None

            series = parse_series(record, path=f"{SERIES_COLLECTION}/{series_id}")
            series.total_completed = min(series.total_completed + 1, series.total_generated)

            step = Advance(series=series)
            if generate_next and series.is_active:
                step = advance(series)

            index = _index_ids(txn.get(INDEX_COLLECTION, series_id))
            self._write_step(txn, step, index=index)
            return step.instance

        nxt = self._transact(fn)
        logger.info("completed task %s", instance_id)
        return nxt

    def set_instance_status(self, instance_id: str, status: TaskStatus) -> TaskInstance:
        """
        Move an instance to `status`.

        Completion goes through completion accounting; leaving the
        completed state never decrements series counters.
        """
        if status is TaskStatus.COMPLETED:
            self.complete_instance(instance_id)
            return self.get_instance(instance_id)

        def fn(txn: Transaction) -> TaskInstance:
            instance = _load_instance(txn, instance_id)
            if instance.status is not status:
                instance.status = status
                instance.completed_on = None
                txn.put(TASKS_COLLECTION, instance_id, instance_to_record(instance))
            return instance

        return self._transact(fn)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _call(self, operation: Callable[[], T]) -> T:
        return retry_operation(
            operation,
            attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay,
            sleep=self._sleep,
        )

    def _transact(self, fn: Callable[[Transaction], T]) -> T:
        retries = self._settings.conflict_retries

        for attempt in range(retries):
            try:
                return self._call(lambda: self._store.transact(fn))
            except ConcurrencyConflict as e:
                if attempt == retries - 1:
                    raise
                logger.warning("transaction conflict (%s), retry %d/%d", e, attempt + 1, retries)

        raise AssertionError("unreachable")

    def _write_step(self, txn: Transaction, step: Advance, *, index: list[str]) -> None:
        series = step.series
        txn.put(SERIES_COLLECTION, series.series_id, series_to_record(series))

        if step.instance is not None:
            instance = step.instance
            if txn.get(TASKS_COLLECTION, instance.instance_id) is not None:
                raise ConcurrencyConflict(f"task id {instance.instance_id} taken")
            txn.put(TASKS_COLLECTION, instance.instance_id, instance_to_record(instance))
            txn.put(
                INDEX_COLLECTION,
                series.series_id,
                index_record([*index, instance.instance_id]),
            )

    def _taken_series_ids(self) -> set[str]:
        """
        Series ids that must not be handed out again: live series, plus
        deleted ones still referenced by an index or a detached task.
        """
        taken = set(self._call(lambda: self._store.ids(SERIES_COLLECTION)))
        taken.update(self._call(lambda: self._store.ids(INDEX_COLLECTION)))

        for instance_id in self._call(lambda: self._store.ids(TASKS_COLLECTION)):
            series_id = series_id_of(instance_id)
            if series_id:
                taken.add(series_id)

        return taken

    def _cascade_ids(self, series_id: str) -> list[str]:
        """
        Instance ids to delete with a series: the lookup index plus any
        stray task still referencing the series.
        """
        record = self._call(lambda: self._store.get(INDEX_COLLECTION, series_id))
        ids = list(_index_ids(record))

        tasks = self._call(lambda: list(self._store.scan(TASKS_COLLECTION)))
        for record_id, rec in tasks:
            if rec.get("recurring_series_id") == series_id and record_id not in ids:
                ids.append(record_id)

        return ids

    def _prune_index(self, series_id: str, removed: Iterable[str]) -> None:
        gone = set(removed)

        def fn(txn: Transaction) -> None:
            record = txn.get(INDEX_COLLECTION, series_id)
            if record is None:
                return
            remaining = [i for i in _index_ids(record) if i not in gone]
            txn.put(INDEX_COLLECTION, series_id, index_record(remaining))

        self._transact(fn)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _load_series(txn: Transaction, series_id: str) -> SeriesState:
    record = txn.get(SERIES_COLLECTION, series_id)
    if record is None:
        raise NotFoundError(f"Series not found: {series_id}")
    return parse_series(record, path=f"{SERIES_COLLECTION}/{series_id}")


def _load_instance(txn: Transaction, instance_id: str) -> TaskInstance:
    record = txn.get(TASKS_COLLECTION, instance_id)
    if record is None:
        raise NotFoundError(f"Task not found: {instance_id}")
    return parse_instance(record, path=f"{TASKS_COLLECTION}/{instance_id}")


def _index_ids(record: Optional[dict]) -> list[str]:
    if not record:
        return []
    ids = record.get("instance_ids") or []
    return [i for i in ids if isinstance(i, str)]


def _interrupted(cancel: Optional[threading.Event], deadline: Optional[float]) -> bool:
    if cancel is not None and cancel.is_set():
        return True
    return deadline is not None and time.monotonic() >= deadline
