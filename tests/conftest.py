"""Shared fixtures for recurctl tests."""

from datetime import date
from typing import Callable, Optional

import pytest

from recurctl.engine.config import Settings
from recurctl.engine.manager import SeriesLifecycleManager
from recurctl.engine.model import Pattern, RecurrenceRule, SeriesState, TaskTemplate
from recurctl.engine.store import MemoryStore, TransientStorageError

TODAY = date(2026, 3, 2)  # a Monday
USER = "user-1"


class FakeClock:
    """Settable replacement for date.today."""

    def __init__(self, today: date = TODAY) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry policy (no real sleeping)."""
    return []


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def manager(store: MemoryStore, clock: FakeClock, sleeps: list[float]) -> SeriesLifecycleManager:
    return SeriesLifecycleManager(
        store,
        settings=Settings(user_id=USER),
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def template() -> TaskTemplate:
    return TaskTemplate(title="Water the plants", tags=("home",), estimated_minutes=10)


class FailingSave:
    """
    Store mixin: the next raw save into `fail_collection` raises a
    transient error, once.
    """

    fail_collection: Optional[str] = None

    def _save(self, collection, record_id, version, record):
        if collection == self.fail_collection:
            self.fail_collection = None
            raise TransientStorageError(f"write to {collection}/{record_id} failed")
        super()._save(collection, record_id, version, record)


class FailingMemoryStore(FailingSave, MemoryStore):
    pass


def make_rule(pattern: Pattern = Pattern.DAILY, **kwargs) -> RecurrenceRule:
    return RecurrenceRule(pattern=pattern, **kwargs)


def make_series(rule: RecurrenceRule, start: date = TODAY, **kwargs) -> SeriesState:
    fields = {
        "series_id": "2026-03-02__001__water_the_plants",
        "user_id": USER,
        "template": TaskTemplate(title="Water the plants"),
        "rule": rule,
        "created": start,
        "next_due_date": start,
    }
    fields.update(kwargs)
    return SeriesState(**fields)


@pytest.fixture
def series_factory() -> Callable[..., SeriesState]:
    return make_series
