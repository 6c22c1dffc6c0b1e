"""Tests for SeriesLifecycleManager: lifecycle, completion accounting, stats."""

import threading
from datetime import date

import pytest

from conftest import TODAY, USER, FailingMemoryStore, FakeClock, make_rule, make_series
from recurctl.engine.config import Settings
from recurctl.engine.manager import (
    INDEX_COLLECTION,
    SERIES_COLLECTION,
    TASKS_COLLECTION,
    SeriesLifecycleManager,
)
from recurctl.engine.model import Pattern, SeriesStatus, TaskStatus, TaskTemplate, Weekday
from recurctl.engine.ops import instance_to_record, series_to_record
from recurctl.engine.store import (
    ConcurrencyConflict,
    MemoryStore,
    NotFoundError,
    OperationCancelled,
    TransientStorageError,
)
from recurctl.engine.validate import ValidationError


# =============================================================================
# Helpers
# =============================================================================


def _daily(manager, template, **rule_kwargs):
    return manager.create_series(USER, template, make_rule(Pattern.DAILY, **rule_kwargs), TODAY)


class RacyStore(MemoryStore):
    """Simulates a concurrent writer touching every record a transaction read."""

    def __init__(self) -> None:
        super().__init__()
        self.races = 0

    def transact(self, fn):
        if self.races <= 0:
            return super().transact(fn)

        self.races -= 1

        def racing(txn):
            result = fn(txn)
            for collection, record_id in txn.read_set:
                record = self.get(collection, record_id)
                if record is not None:
                    self.put(collection, record_id, record)
            return result

        return super().transact(racing)


class FlakyStore(MemoryStore):
    """Fails the first `failures` raw reads with a transient error."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def _load(self, collection, record_id):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStorageError("store unavailable")
        return super()._load(collection, record_id)


# =============================================================================
# Creation
# =============================================================================


class TestCreateSeries:
    def test_creates_series_and_first_instance(self, manager, store, template) -> None:
        step = _daily(manager, template)

        series = manager.get_series(step.series.series_id)
        assert series.series_id == "2026-03-02__001__water_the_plants"
        assert series.user_id == USER
        assert series.total_generated == 1
        assert series.last_generated_date == TODAY
        assert series.next_due_date == date(2026, 3, 3)
        assert series.state is SeriesStatus.ACTIVE

        instances = manager.instances_for_series(series.series_id)
        assert [t.instance_id for t in instances] == [step.instance.instance_id]
        assert instances[0].due_date == TODAY
        assert instances[0].template == template
        assert store.get(INDEX_COLLECTION, series.series_id)["instance_ids"] == [
            step.instance.instance_id
        ]

    def test_start_defaults_to_today(self, manager, clock, template) -> None:
        clock.today = date(2026, 5, 9)
        step = manager.create_series(USER, template, make_rule(Pattern.WEEKLY))
        assert step.instance.due_date == date(2026, 5, 9)
        assert step.series.next_due_date == date(2026, 5, 16)

    def test_ids_are_sequenced_per_day(self, manager, template) -> None:
        first = _daily(manager, template)
        second = _daily(manager, TaskTemplate(title="Feed cat!"))
        assert first.series.series_id.startswith("2026-03-02__001__")
        assert second.series.series_id == "2026-03-02__002__feed_cat"

    def test_invalid_rule_rejected_before_writing(self, manager, store, template) -> None:
        with pytest.raises(ValidationError) as exc:
            _daily(manager, template, interval=0)

        assert [i.field for i in exc.value.issues] == ["interval"]
        assert store.ids(SERIES_COLLECTION) == []
        assert store.ids(TASKS_COLLECTION) == []

    def test_end_date_before_start_rejected(self, manager, template) -> None:
        with pytest.raises(ValidationError):
            _daily(manager, template, end_date=date(2026, 3, 1))

    def test_empty_weekdays_rejected(self, manager, template) -> None:
        rule = make_rule(Pattern.WEEKLY, days_of_week=frozenset())
        with pytest.raises(ValidationError):
            manager.create_series(USER, template, rule, TODAY)

    def test_user_required(self, manager, template) -> None:
        with pytest.raises(ValidationError):
            manager.create_series(" ", template, make_rule(), TODAY)

    def test_single_occurrence_series_ends_immediately(self, manager, template) -> None:
        step = _daily(manager, template, max_occurrences=1)
        assert step.instance is not None
        assert step.series.state is SeriesStatus.ENDED


# =============================================================================
# Pause / resume
# =============================================================================


class TestPauseResume:
    def test_pause_then_resume_preserves_cursor(self, manager, template) -> None:
        sid = _daily(manager, template).series.series_id
        before = manager.get_series(sid)

        paused = manager.pause(sid)
        assert paused.state is SeriesStatus.PAUSED

        resumed = manager.resume(sid)
        assert resumed.is_active
        assert resumed.next_due_date == before.next_due_date
        assert resumed.total_generated == before.total_generated
        assert resumed.last_generated_date == before.last_generated_date

    def test_paused_series_does_not_generate(self, manager, template) -> None:
        sid = _daily(manager, template).series.series_id
        manager.pause(sid)

        step = manager.generate_next(sid)

        assert step.instance is None
        assert manager.get_series(sid).total_generated == 1

    def test_resume_ended_series_is_noop(self, manager, template) -> None:
        sid = _daily(manager, template, max_occurrences=1).series.series_id

        series = manager.resume(sid)

        assert series.state is SeriesStatus.ENDED
        assert not manager.get_series(sid).is_active

    def test_unknown_series(self, manager) -> None:
        with pytest.raises(NotFoundError):
            manager.pause("2026-01-01__001__missing")
        with pytest.raises(NotFoundError):
            manager.resume("2026-01-01__001__missing")


# =============================================================================
# Completion accounting
# =============================================================================


class TestCompletion:
    def test_completion_counts_and_generates_next(self, manager, clock, template) -> None:
        step = _daily(manager, template)
        clock.today = date(2026, 3, 2)

        nxt = manager.complete_instance(step.instance.instance_id, actual_minutes=12)

        assert nxt is not None
        assert nxt.due_date == date(2026, 3, 3)
        assert nxt.sequence == 2

        series = manager.get_series(step.series.series_id)
        assert series.total_completed == 1
        assert series.total_generated == 2

        done = manager.get_instance(step.instance.instance_id)
        assert done.status is TaskStatus.COMPLETED
        assert done.completed_on == date(2026, 3, 2)
        assert done.actual_minutes == 12

    def test_double_completion_counts_once(self, manager, template) -> None:
        step = _daily(manager, template)
        iid = step.instance.instance_id

        manager.complete_instance(iid)
        again = manager.complete_instance(iid)

        assert again is None
        series = manager.get_series(step.series.series_id)
        assert series.total_completed == 1
        assert series.total_generated == 2

    def test_completion_on_paused_series_counts_without_generating(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.pause(step.series.series_id)

        assert manager.complete_instance(step.instance.instance_id) is None

        series = manager.get_series(step.series.series_id)
        assert series.total_completed == 1
        assert series.total_generated == 1

    def test_completing_last_instance_of_ended_series(self, manager, template) -> None:
        step = _daily(manager, template, max_occurrences=1)

        assert manager.complete_instance(step.instance.instance_id) is None

        series = manager.get_series(step.series.series_id)
        assert (series.total_completed, series.total_generated) == (1, 1)

    def test_detached_instance_completes_alone(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.delete_series(step.series.series_id)

        assert manager.complete_instance(step.instance.instance_id) is None
        assert manager.get_instance(step.instance.instance_id).is_completed

    def test_unknown_instance(self, manager) -> None:
        with pytest.raises(NotFoundError):
            manager.complete_instance("2026-01-01__001__x--0001")

    def test_status_changes_never_decrement(self, manager, template) -> None:
        step = _daily(manager, template)
        iid = step.instance.instance_id

        assert manager.set_instance_status(iid, TaskStatus.IN_PROGRESS).status is TaskStatus.IN_PROGRESS
        assert manager.set_instance_status(iid, TaskStatus.COMPLETED).is_completed

        reopened = manager.set_instance_status(iid, TaskStatus.TODO)
        assert reopened.status is TaskStatus.TODO
        assert reopened.completed_on is None
        assert manager.get_series(step.series.series_id).total_completed == 1

    def test_editing_instance_leaves_template_alone(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.set_instance_status(step.instance.instance_id, TaskStatus.CANCELLED)
        assert manager.get_series(step.series.series_id).template == template


# =============================================================================
# Deletion
# =============================================================================


class TestDeleteSeries:
    def _series_with_instances(self, manager, template, n: int = 3) -> str:
        step = _daily(manager, template)
        sid = step.series.series_id
        for _ in range(n - 1):
            manager.generate_next(sid)
        return sid

    def test_cascade_removes_every_instance(self, manager, store, template) -> None:
        sid = self._series_with_instances(manager, template)
        other = _daily(manager, TaskTemplate(title="Other"))

        assert manager.delete_series(sid, cascade=True) == 3

        assert store.get(SERIES_COLLECTION, sid) is None
        assert store.get(INDEX_COLLECTION, sid) is None
        remaining = [r["recurring_series_id"] for _, r in store.scan(TASKS_COLLECTION)]
        assert remaining == [other.series.series_id]

    def test_cascade_includes_stray_instances(self, manager, store, template) -> None:
        sid = self._series_with_instances(manager, template, n=1)
        stray = manager.get_instance(f"{sid}--0001")
        stray.instance_id = "stray"
        store.put(TASKS_COLLECTION, "stray", instance_to_record(stray))

        assert manager.delete_series(sid, cascade=True) == 2
        assert store.get(TASKS_COLLECTION, "stray") is None

    def test_without_cascade_instances_are_detached(self, manager, store, template) -> None:
        sid = self._series_with_instances(manager, template)

        assert manager.delete_series(sid) == 0

        with pytest.raises(NotFoundError):
            manager.get_series(sid)
        records = [r for _, r in store.scan(TASKS_COLLECTION)]
        assert len(records) == 3
        assert all(r["recurring_series_id"] == sid for r in records)

    def test_recreated_series_never_reuses_detached_ids(self, manager, store, template) -> None:
        old = _daily(manager, template)
        old_task = old.instance.instance_id
        manager.complete_instance(old_task)
        manager.delete_series(old.series.series_id)

        new = manager.create_series(USER, template, make_rule(), date(2026, 4, 1))

        assert new.series.series_id == "2026-03-02__002__water_the_plants"
        detached = manager.get_instance(old_task)
        assert detached.is_completed
        assert detached.due_date == TODAY
        assert detached.recurring_series_id == old.series.series_id

        manager.delete_series(new.series.series_id, cascade=True)
        remaining = {rid for rid, _ in store.scan(TASKS_COLLECTION)}
        assert remaining == {old_task, f"{old.series.series_id}--0002"}

    def test_generation_refuses_to_overwrite_existing_task(self, manager, store, template) -> None:
        step = _daily(manager, template)
        sid = step.series.series_id
        planted = manager.get_instance(step.instance.instance_id)
        planted.instance_id = f"{sid}--0002"
        planted.status = TaskStatus.COMPLETED
        store.put(TASKS_COLLECTION, planted.instance_id, instance_to_record(planted))

        with pytest.raises(ConcurrencyConflict):
            manager.generate_next(sid)

        assert manager.get_instance(planted.instance_id).is_completed
        assert manager.get_series(sid).total_generated == 1

    def test_cancelled_cascade_leaves_series(self, manager, store, template) -> None:
        sid = self._series_with_instances(manager, template)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelled) as exc:
            manager.delete_series(sid, cascade=True, cancel=cancel)

        assert exc.value.completed == 0
        assert manager.get_series(sid).series_id == sid
        assert len(manager.instances_for_series(sid)) == 3

    def test_timeout_zero_interrupts(self, manager, template) -> None:
        sid = self._series_with_instances(manager, template)
        with pytest.raises(OperationCancelled):
            manager.delete_series(sid, cascade=True, timeout=0)

    def test_unknown_series(self, manager) -> None:
        with pytest.raises(NotFoundError):
            manager.delete_series("2026-01-01__001__missing", cascade=True)


# =============================================================================
# Statistics
# =============================================================================


class TestStats:
    def test_no_series(self, manager) -> None:
        stats = manager.stats_for_user(USER)
        assert stats.total_series == 0
        assert stats.overall_completion_rate == 0

    def test_completion_rate_percentage(self, manager, store) -> None:
        series = make_series(make_rule(), total_generated=10, total_completed=7)
        store.put(SERIES_COLLECTION, series.series_id, series_to_record(series))

        stats = manager.stats_for_user(USER)

        assert stats.total_tasks_generated == 10
        assert stats.total_tasks_completed == 7
        assert stats.overall_completion_rate == 70

    def test_counts_states_per_user(self, manager, template) -> None:
        active = _daily(manager, template).series.series_id
        paused = _daily(manager, template).series.series_id
        _daily(manager, template, max_occurrences=1)
        manager.create_series("someone-else", template, make_rule(), TODAY)
        manager.pause(paused)
        manager.complete_instance(f"{active}--0001")

        stats = manager.stats_for_user(USER)

        assert stats.total_series == 3
        assert (stats.active_series, stats.paused_series, stats.ended_series) == (1, 1, 1)
        assert stats.total_tasks_generated == 4
        assert stats.total_tasks_completed == 1
        assert stats.overall_completion_rate == 25

    def test_list_series_active_only(self, manager, template) -> None:
        a = _daily(manager, template).series.series_id
        b = _daily(manager, template).series.series_id
        manager.pause(a)

        assert [s.series_id for s in manager.list_series(USER)] == [b, a]
        assert [s.series_id for s in manager.list_series(USER, active_only=True)] == [b]


# =============================================================================
# Sweep / explicit generation
# =============================================================================


class TestSweep:
    def test_pending_instance_blocks_generation(self, manager, template) -> None:
        _daily(manager, template)
        assert manager.sweep(USER, date(2026, 3, 10)) == 0

    def test_generates_when_due_and_nothing_pending(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.set_instance_status(step.instance.instance_id, TaskStatus.CANCELLED)

        assert manager.sweep(USER, date(2026, 3, 3)) == 1

        instances = manager.instances_for_series(step.series.series_id)
        assert [t.due_date for t in instances] == [date(2026, 3, 3), date(2026, 3, 2)]

    def test_not_yet_due(self, manager, template) -> None:
        step = manager.create_series(USER, template, make_rule(Pattern.WEEKLY), TODAY)
        manager.set_instance_status(step.instance.instance_id, TaskStatus.CANCELLED)
        assert manager.sweep(USER, date(2026, 3, 5)) == 0

    def test_paused_series_skipped(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.set_instance_status(step.instance.instance_id, TaskStatus.CANCELLED)
        manager.pause(step.series.series_id)
        assert manager.sweep(USER, date(2026, 3, 10)) == 0

    def test_biweekly_series_walks_the_schedule(self, manager, template) -> None:
        rule = make_rule(
            Pattern.WEEKLY,
            interval=2,
            days_of_week=frozenset({Weekday.MON, Weekday.WED, Weekday.FRI}),
        )
        step = manager.create_series(USER, template, rule, date(2026, 3, 4))
        sid = step.series.series_id

        manager.generate_next(sid)
        manager.generate_next(sid)

        dues = sorted(t.due_date for t in manager.instances_for_series(sid))
        assert dues == [date(2026, 3, 4), date(2026, 3, 6), date(2026, 3, 16)]


# =============================================================================
# Template / rule updates
# =============================================================================


class TestUpdates:
    def test_template_change_applies_to_future_instances(self, manager, template) -> None:
        step = _daily(manager, template)
        manager.update_template(step.series.series_id, title="Water all plants", priority=template.priority)

        nxt = manager.generate_next(step.series.series_id).instance

        assert nxt.title == "Water all plants"
        assert manager.get_instance(step.instance.instance_id).title == "Water the plants"

    def test_unknown_template_field(self, manager, template) -> None:
        sid = _daily(manager, template).series.series_id
        with pytest.raises(ValidationError):
            manager.update_template(sid, colour="red")

    def test_invalid_rule_update(self, manager, template) -> None:
        sid = _daily(manager, template).series.series_id
        with pytest.raises(ValidationError):
            manager.update_rule(sid, make_rule(Pattern.MONTHLY, day_of_month=0))

    def test_rule_update_changes_following_occurrences(self, manager, template) -> None:
        sid = _daily(manager, template).series.series_id
        manager.update_rule(sid, make_rule(Pattern.WEEKLY))

        step = manager.generate_next(sid)

        assert step.instance.due_date == date(2026, 3, 3)
        assert step.series.next_due_date == date(2026, 3, 10)


# =============================================================================
# Concurrency and storage failures
# =============================================================================


class TestConcurrency:
    def _manager(self, store, sleeps) -> SeriesLifecycleManager:
        return SeriesLifecycleManager(
            store,
            settings=Settings(user_id=USER, conflict_retries=5),
            clock=FakeClock(),
            sleep=sleeps.append,
        )

    def test_conflicting_completion_is_retried_once_counted(self, template, sleeps) -> None:
        store = RacyStore()
        manager = self._manager(store, sleeps)
        step = _daily(manager, template)

        store.races = 2
        nxt = manager.complete_instance(step.instance.instance_id)

        series = manager.get_series(step.series.series_id)
        assert nxt is not None
        assert series.total_completed == 1
        assert series.total_generated == 2

    def test_conflicts_surface_after_retries(self, template, sleeps) -> None:
        store = RacyStore()
        manager = self._manager(store, sleeps)
        step = _daily(manager, template)

        store.races = 10
        with pytest.raises(ConcurrencyConflict):
            manager.pause(step.series.series_id)

        assert manager.get_series(step.series.series_id).is_active

    def test_transient_read_failures_are_retried(self, template, sleeps) -> None:
        store = FlakyStore(failures=0)
        manager = self._manager(store, sleeps)
        sid = _daily(manager, template).series.series_id

        store.failures = 2
        assert manager.get_series(sid).series_id == sid
        assert sleeps == [1.0, 2.0]

    def test_transient_failures_surface_after_attempts(self, template, sleeps) -> None:
        store = FlakyStore(failures=0)
        manager = self._manager(store, sleeps)
        sid = _daily(manager, template).series.series_id

        store.failures = 3
        with pytest.raises(TransientStorageError):
            manager.get_series(sid)


# =============================================================================
# Failures while committing
# =============================================================================


class TestCommitFailures:
    def _manager(self, store, sleeps) -> SeriesLifecycleManager:
        return SeriesLifecycleManager(
            store,
            settings=Settings(user_id=USER),
            clock=FakeClock(),
            sleep=sleeps.append,
        )

    def test_completion_counted_when_series_write_fails_once(self, template, sleeps) -> None:
        store = FailingMemoryStore()
        manager = self._manager(store, sleeps)
        step = _daily(manager, template)

        store.fail_collection = SERIES_COLLECTION
        nxt = manager.complete_instance(step.instance.instance_id)

        assert sleeps == [1.0]
        assert nxt is not None and nxt.sequence == 2
        assert manager.get_instance(step.instance.instance_id).is_completed
        series = manager.get_series(step.series.series_id)
        assert (series.total_completed, series.total_generated) == (1, 2)

    def test_creation_leaves_one_series_when_task_write_fails_once(self, template, sleeps) -> None:
        store = FailingMemoryStore()
        manager = self._manager(store, sleeps)

        store.fail_collection = TASKS_COLLECTION
        step = _daily(manager, template)

        assert sleeps == [1.0]
        assert step.series.series_id == "2026-03-02__001__water_the_plants"
        assert store.ids(SERIES_COLLECTION) == [step.series.series_id]
        assert store.ids(TASKS_COLLECTION) == [step.instance.instance_id]
