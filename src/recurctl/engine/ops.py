# src/recurctl/engine/ops.py

"""
Identifier generation and record rendering.

This module contains:
- series id / slug generation,
- instance id derivation (pure, from series id + sequence),
- serialisation of models into plain store records,
- YAML rendering of records for the file store.

No parsing is performed here.
"""

from __future__ import annotations

import re
from datetime import date
from typing import TYPE_CHECKING, Any, Final, Iterable, Optional

import yaml

if TYPE_CHECKING:
    from .model import RecurrenceRule, SeriesState, TaskInstance, TaskTemplate


# ---------------------------------------------------------------------
# Record format
# ---------------------------------------------------------------------

RECORD_FORMAT: Final[int] = 1


# ---------------------------------------------------------------------
# Slugging / ids
# ---------------------------------------------------------------------

_SLUG_RE = re.compile(r"[^a-z0-9_]+")


def slugify(title: str) -> str:
    """
    Convert title text to an id-friendly slug.

    The slug is intended to be stable and predictable.
    """
    s = title.strip().lower()
    s = re.sub(r"\s+", "_", s)
    s = _SLUG_RE.sub("_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return s[:40].rstrip("_") or "series"


def next_series_seq(existing_ids: Iterable[str], created: date) -> int:
    """
    Compute the next sequence number for series created on `created`.
    """
    prefix = created.isoformat() + "__"
    best = 0

    for name in existing_ids:
        if not name.startswith(prefix):
            continue

        parts = name.split("__", 2)
        if len(parts) < 2:
            continue

        try:
            n = int(parts[1])
        except ValueError:
            continue

        if n > best:
            best = n

    return best + 1


def new_series_id(existing_ids: Iterable[str], created: date, title: str) -> str:
    """
    Build a series id of the form `YYYY-MM-DD__NNN__slug`.
    """
    seq = next_series_seq(existing_ids, created)
    return f"{created.isoformat()}__{seq:03d}__{slugify(title)}"


def instance_id_for(series_id: str, sequence: int) -> str:
    """
    Derive the id of the `sequence`-th instance of a series.

    Sequences are unique per series because total_generated never
    decreases.
    """
    return f"{series_id}--{sequence:04d}"


def series_id_of(instance_id: str) -> str:
    """
    Series id an instance id was derived from ("" if it was not derived).
    """
    head, sep, _ = instance_id.rpartition("--")
    return head if sep else ""


# ---------------------------------------------------------------------
# Serialisation (records)
# ---------------------------------------------------------------------

def template_to_record(template: "TaskTemplate") -> dict[str, Any]:
    return {
        "title": template.title,
        "description": template.description,
        "priority": template.priority.value,
        "category": template.category,
        "tags": list(template.tags),
        "estimated_minutes": template.estimated_minutes,
    }


def rule_to_record(rule: "RecurrenceRule") -> dict[str, Any]:
    """
    Render a rule; fields not relevant to the pattern are kept as-is.
    """
    days = None
    if rule.days_of_week is not None:
        days = [d.value for d in rule.sorted_days()]

    return {
        "pattern": rule.pattern.value,
        "interval": rule.interval,
        "days_of_week": days,
        "day_of_month": rule.day_of_month,
        "end_date": _iso(rule.end_date),
        "max_occurrences": rule.max_occurrences,
    }


def series_to_record(series: "SeriesState") -> dict[str, Any]:
    return {
        "id": series.series_id,
        "user_id": series.user_id,
        "template": template_to_record(series.template),
        "recurring_config": rule_to_record(series.rule),
        "created": series.created.isoformat(),
        "last_generated_date": _iso(series.last_generated_date),
        "next_due_date": _iso(series.next_due_date),
        "is_active": bool(series.is_active),
        "total_generated": int(series.total_generated),
        "total_completed": int(series.total_completed),
        "format": RECORD_FORMAT,
    }


def instance_to_record(instance: "TaskInstance") -> dict[str, Any]:
    data = {
        "id": instance.instance_id,
        "user_id": instance.user_id,
        "recurring_series_id": instance.recurring_series_id,
        "sequence": int(instance.sequence),
        "due_date": instance.due_date.isoformat(),
        "status": instance.status.value,
        "completed_on": _iso(instance.completed_on),
        "actual_minutes": instance.actual_minutes,
        "is_recurring": True,
        "format": RECORD_FORMAT,
    }
    data.update(template_to_record(instance.template))
    return data


def index_record(instance_ids: Iterable[str]) -> dict[str, Any]:
    """
    Record of the series -> instances lookup index.
    """
    return {"instance_ids": list(dict.fromkeys(instance_ids))}


# ---------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------

def render_yaml(record: dict[str, Any]) -> str:
    return yaml.safe_dump(record, sort_keys=False, allow_unicode=True)


def _iso(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None
