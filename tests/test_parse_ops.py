"""Tests for id generation, record rendering and record parsing."""

from datetime import date

import pytest

from conftest import TODAY, make_rule, make_series
from recurctl.engine.model import Pattern, Priority, TaskInstance, TaskStatus, TaskTemplate, Weekday
from recurctl.engine.ops import (
    index_record,
    instance_id_for,
    instance_to_record,
    new_series_id,
    next_series_seq,
    render_yaml,
    rule_to_record,
    series_id_of,
    series_to_record,
    slugify,
)
from recurctl.engine.parse import ParseError, parse_instance, parse_rule, parse_series, parse_yaml


# =============================================================================
# Ids
# =============================================================================


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Water the plants", "water_the_plants"),
        ("  Pay rent!! (March)  ", "pay_rent_march"),
        ("???", "series"),
        ("x" * 60, "x" * 40),
    ],
)
def test_slugify(title: str, expected: str) -> None:
    assert slugify(title) == expected


def test_next_series_seq_counts_only_same_day() -> None:
    existing = [
        "2026-03-02__001__a",
        "2026-03-02__007__b",
        "2026-03-01__042__c",
        "2026-03-02__bad__d",
    ]
    assert next_series_seq(existing, TODAY) == 8
    assert next_series_seq(existing, date(2026, 3, 3)) == 1


def test_new_series_id_and_instance_ids() -> None:
    sid = new_series_id([], TODAY, "Weekly review")
    assert sid == "2026-03-02__001__weekly_review"
    assert instance_id_for(sid, 12) == "2026-03-02__001__weekly_review--0012"
    assert series_id_of(instance_id_for(sid, 12)) == sid
    assert series_id_of("stray") == ""


def test_index_record_drops_duplicates_keeping_order() -> None:
    assert index_record(["b", "a", "b"]) == {"instance_ids": ["b", "a"]}


# =============================================================================
# Records
# =============================================================================


def test_series_record_survives_yaml() -> None:
    rule = make_rule(
        Pattern.WEEKLY,
        interval=2,
        days_of_week=frozenset({Weekday.FRI, Weekday.MON}),
        end_date=date(2026, 12, 31),
    )
    series = make_series(
        rule,
        template=TaskTemplate(title="Review", priority=Priority.HIGH, tags=("work",)),
        total_generated=4,
        total_completed=3,
        last_generated_date=date(2026, 3, 13),
    )

    record = parse_yaml(render_yaml(series_to_record(series)), path="mem")
    assert record["recurring_config"]["days_of_week"] == ["mon", "fri"]

    parsed = parse_series(record)
    assert parsed == series


def test_instance_record_flattens_template() -> None:
    instance = TaskInstance(
        instance_id="s--0001",
        user_id="u",
        recurring_series_id="s",
        template=TaskTemplate(title="Stretch", estimated_minutes=5),
        due_date=TODAY,
        sequence=1,
        status=TaskStatus.COMPLETED,
        completed_on=TODAY,
    )

    record = instance_to_record(instance)

    assert record["title"] == "Stretch"
    assert record["is_recurring"] is True
    assert record["status"] == "completed"
    assert parse_instance(record) == instance


def test_rule_record_keeps_unset_days_distinct_from_empty() -> None:
    assert rule_to_record(make_rule(Pattern.WEEKLY))["days_of_week"] is None
    assert rule_to_record(make_rule(Pattern.WEEKLY, days_of_week=frozenset()))["days_of_week"] == []


# =============================================================================
# Parse errors
# =============================================================================


def _series_record(**overrides) -> dict:
    record = series_to_record(make_series(make_rule()))
    record.update(overrides)
    return record


class TestParseErrors:
    def test_unknown_pattern(self) -> None:
        with pytest.raises(ParseError) as exc:
            parse_rule({"pattern": "hourly"}, path="cfg")
        assert "hourly" in str(exc.value)
        assert str(exc.value).startswith("cfg: ")

    def test_bad_weekday(self) -> None:
        with pytest.raises(ParseError):
            parse_rule({"pattern": "weekly", "days_of_week": ["funday"]}, path="cfg")

    def test_weekday_indices_and_names(self) -> None:
        rule = parse_rule({"pattern": "weekly", "days_of_week": [0, "Monday", "fri"]}, path="cfg")
        assert rule.days_of_week == frozenset({Weekday.SUN, Weekday.MON, Weekday.FRI})
        assert rule.interval == 1

    def test_invalid_date(self) -> None:
        with pytest.raises(ParseError):
            parse_series(_series_record(next_due_date="2026-02-30"))

    def test_is_active_must_be_bool(self) -> None:
        with pytest.raises(ParseError):
            parse_series(_series_record(is_active="yes"))

    def test_counters_checked(self) -> None:
        with pytest.raises(ParseError) as exc:
            parse_series(_series_record(total_generated=1, total_completed=2))
        assert "total_completed" in str(exc.value)

    def test_ended_series_cannot_be_active(self) -> None:
        with pytest.raises(ParseError):
            parse_series(_series_record(next_due_date=None, is_active=True))

    def test_missing_template(self) -> None:
        record = _series_record()
        del record["template"]
        with pytest.raises(ParseError):
            parse_series(record)

    def test_invalid_task_status(self) -> None:
        record = instance_to_record(
            TaskInstance(
                instance_id="s--0001",
                user_id="u",
                recurring_series_id="s",
                template=TaskTemplate(title="t"),
                due_date=TODAY,
                sequence=1,
            )
        )
        record["status"] = "done"
        with pytest.raises(ParseError):
            parse_instance(record)

    def test_yaml_root_must_be_mapping(self) -> None:
        with pytest.raises(ParseError):
            parse_yaml("[1, 2]", path="x.yml")

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ParseError):
            parse_yaml("a: [unclosed", path="x.yml")


# =============================================================================
# Weekday tokens
# =============================================================================


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("mon", Weekday.MON), (" SUN ", Weekday.SUN), ("Wednesday", Weekday.WED), (6, Weekday.SAT)],
)
def test_weekday_accepts_tokens_names_and_indices(raw, expected: Weekday) -> None:
    assert Weekday.parse(raw) is expected


@pytest.mark.parametrize("raw", ["monkey", "Sunshine", "tues", "", 7, True])
def test_weekday_rejects_anything_else(raw) -> None:
    with pytest.raises(ValueError):
        Weekday.parse(raw)
