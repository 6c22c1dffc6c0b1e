# src/recurctl/engine/parse.py

"""
Record parser.

Parses plain store records (as written by ops.py) back into models.

Record kinds:
- series   : id, user_id, template, recurring_config, cursor, counters
- instance : id, user_id, recurring_series_id, template fields, due_date, status

This module performs *structural* parsing only and returns models.
Model-level invariants are enforced via SeriesState.validate().
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

import yaml

from .model import (
    Pattern,
    Priority,
    RecurrenceRule,
    SeriesState,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
    Weekday,
)


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ParseError(Exception):
    """
    Raised when a stored record is syntactically or structurally invalid.
    """

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def parse_series(record: dict[str, Any], *, path: str = "recurring_series") -> SeriesState:
    """
    Parse a series record into a SeriesState.

    `path` is only used to locate errors (collection/id or file path).
    """
    _require_mapping(path, record)

    series_id = _require_str(path, record, "id")
    user_id = _require_str(path, record, "user_id")

    template_raw = record.get("template")
    _require_mapping(f"{path}.template", template_raw)
    template = parse_template(template_raw, path=f"{path}.template")

    config_raw = record.get("recurring_config")
    _require_mapping(f"{path}.recurring_config", config_raw)
    rule = parse_rule(config_raw, path=f"{path}.recurring_config")

    series = SeriesState(
        series_id=series_id,
        user_id=user_id,
        template=template,
        rule=rule,
        created=_parse_date(path, record, "created"),
        next_due_date=_optional_date(path, record, "next_due_date"),
        last_generated_date=_optional_date(path, record, "last_generated_date"),
        is_active=_require_bool(path, record, "is_active"),
        total_generated=_optional_int(path, record, "total_generated") or 0,
        total_completed=_optional_int(path, record, "total_completed") or 0,
        version=_optional_int(path, record, "version") or 0,
    )

    try:
        series.validate()
    except ValueError as e:
        raise ParseError(path, str(e)) from e

    return series


def parse_instance(record: dict[str, Any], *, path: str = "tasks") -> TaskInstance:
    """
    Parse a task instance record.
    """
    _require_mapping(path, record)

    raw_status = _require_str(path, record, "status")
    try:
        status = TaskStatus(raw_status.strip().lower())
    except ValueError as e:
        allowed = ", ".join(s.value for s in TaskStatus)
        raise ParseError(path, f"Invalid status '{raw_status}' (allowed: {allowed})") from e

    return TaskInstance(
        instance_id=_require_str(path, record, "id"),
        user_id=_require_str(path, record, "user_id"),
        recurring_series_id=_require_str(path, record, "recurring_series_id"),
        template=parse_template(record, path=path),
        due_date=_parse_date(path, record, "due_date"),
        sequence=_optional_int(path, record, "sequence") or 0,
        status=status,
        completed_on=_optional_date(path, record, "completed_on"),
        actual_minutes=_optional_int(path, record, "actual_minutes"),
        version=_optional_int(path, record, "version") or 0,
    )


def parse_template(data: dict[str, Any], *, path: str) -> TaskTemplate:
    raw_priority = data.get("priority") or Priority.MEDIUM.value
    try:
        priority = Priority(str(raw_priority).strip().lower())
    except ValueError as e:
        raise ParseError(path, f"Invalid priority '{raw_priority}'") from e

    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ParseError(path, "Key 'tags' must be a list of strings")

    return TaskTemplate(
        title=_require_str(path, data, "title"),
        description=_optional_str(path, data, "description"),
        priority=priority,
        category=_optional_str(path, data, "category"),
        tags=tuple(tags),
        estimated_minutes=_optional_int(path, data, "estimated_minutes"),
    )


def parse_rule(data: dict[str, Any], *, path: str) -> RecurrenceRule:
    raw_pattern = _require_str(path, data, "pattern")
    try:
        pattern = Pattern(raw_pattern.strip().lower())
    except ValueError as e:
        allowed = ", ".join(p.value for p in Pattern)
        raise ParseError(path, f"Invalid pattern '{raw_pattern}' (allowed: {allowed})") from e

    days: Optional[frozenset[Weekday]] = None
    raw_days = data.get("days_of_week")
    if raw_days is not None:
        if not isinstance(raw_days, list):
            raise ParseError(path, "Key 'days_of_week' must be a list")
        try:
            days = frozenset(Weekday.parse(d) for d in raw_days)
        except ValueError as e:
            raise ParseError(path, str(e)) from e

    interval = _optional_int(path, data, "interval")

    return RecurrenceRule(
        pattern=pattern,
        interval=1 if interval is None else interval,
        days_of_week=days,
        day_of_month=_optional_int(path, data, "day_of_month"),
        end_date=_optional_date(path, data, "end_date"),
        max_occurrences=_optional_int(path, data, "max_occurrences"),
    )


def parse_yaml(text: str, *, path: str) -> dict[str, Any]:
    """
    Load a YAML document holding a single record mapping.
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ParseError(path, f"Invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(path, "YAML root must be a mapping/dictionary")

    return data


# ---------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------

def _require_mapping(path: str, value: Any) -> None:
    if not isinstance(value, dict):
        raise ParseError(path, "Record must be a mapping/dictionary")


def _require_str(path: str, data: dict[str, Any], key: str) -> str:
    if key not in data:
        raise ParseError(path, f"Missing required key: {key}")

    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ParseError(path, f"Key '{key}' must be a non-empty string")

    return value


def _optional_str(path: str, data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(path, f"Key '{key}' must be a string")
    return value


def _require_bool(path: str, data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise ParseError(path, f"Key '{key}' must be a boolean")
    return value


def _optional_int(path: str, data: dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(path, f"Key '{key}' must be an integer")
    return value


def _coerce_date(path: str, key: str, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as e:
            raise ParseError(path, f"Invalid ISO date for '{key}': '{value}'") from e

    raise ParseError(path, f"Key '{key}' must be an ISO date string")


def _parse_date(path: str, data: dict[str, Any], key: str) -> date:
    if data.get(key) is None:
        raise ParseError(path, f"Missing required key: {key}")
    return _coerce_date(path, key, data[key])


def _optional_date(path: str, data: dict[str, Any], key: str) -> Optional[date]:
    value = data.get(key)
    if value is None:
        return None
    return _coerce_date(path, key, value)
