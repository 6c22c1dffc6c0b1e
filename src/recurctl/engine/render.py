# src/recurctl/engine/render.py

"""
Rendering helpers for CLI output.

This module is responsible for:
- series list rendering (list),
- structured series detail view (show),
- instance lists and statistics.

It is presentation-only: it does not mutate series state or touch storage.
"""

from __future__ import annotations

import re
import shutil
import sys
import textwrap
from datetime import date
from typing import Iterable

from .model import SeriesState, SeriesStats, SeriesStatus, TaskInstance, TaskStatus
from .recurrence import format_rule


# ---------------------------------------------------------------------
# ANSI / terminal helpers
# ---------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

_RESET = "\033[0m"

_STATUS_WIDTH = 12

_COLOR = {
    SeriesStatus.ACTIVE: "\033[32m",   # green
    SeriesStatus.PAUSED: "\033[34m",   # blue
    SeriesStatus.ENDED: "\033[90m",    # grey
    TaskStatus.TODO: "\033[33m",       # yellow
    TaskStatus.IN_PROGRESS: "\033[36m",
    TaskStatus.COMPLETED: "\033[32m",
    TaskStatus.CANCELLED: "\033[90m",
}


def _supports_color() -> bool:
    """Return True if stdout is a TTY."""
    return sys.stdout.isatty()


def _visible_len(s: str) -> int:
    """Return string length without ANSI colour escapes."""
    return len(_ANSI_RE.sub("", s))


def _paint(key: object, text: str, color: bool) -> str:
    if not (color and _supports_color()):
        return text
    return f"{_COLOR.get(key, '')}{text}{_RESET}"


def _iso(d: date | None) -> str:
    return d.isoformat() if d is not None else "–"


# ---------------------------------------------------------------------
# Series list
# ---------------------------------------------------------------------

def render_series_list(series: Iterable[SeriesState], *, color: bool = True) -> None:
    """
    Print one line per series.

    Format:
      - Title (state: rule, next YYYY-MM-DD, done/generated) id: <series id>
    """
    for s in series:
        state = _paint(s.state, s.state.value, color)
        counts = f"{s.total_completed}/{s.total_generated}"
        meta = f"{state}: {format_rule(s.rule)}, next {_iso(s.next_due_date)}, {counts}"
        print(f"- {s.template.title} ({meta}) id: {s.series_id}")


def render_instances(instances: Iterable[TaskInstance], *, color: bool = True) -> None:
    for t in instances:
        status = _paint(t.status, t.status.value, color)
        status += " " * max(0, _STATUS_WIDTH - _visible_len(status))
        print(f"  {t.due_date.isoformat()}  {status} {t.title} id: {t.instance_id}")


# ---------------------------------------------------------------------
# Series detail view (show)
# ---------------------------------------------------------------------

def render_series_detail(series: SeriesState, *, color: bool = True) -> None:
    """
    Render a structured series detail view.

    Width is capped at 80 characters.
    """
    width = min(80, shutil.get_terminal_size(fallback=(80, 24)).columns)
    inner_w = max(20, width - 4)  # borders + padding

    def wrap_lines(s: str, *, indent: str = "") -> list[str]:
        out: list[str] = []
        for ln in s.rstrip().splitlines() or [""]:
            if not ln.strip():
                out.append(indent.rstrip())
                continue

            wrapped = textwrap.wrap(
                ln,
                width=inner_w - len(indent),
                break_long_words=False,
                break_on_hyphens=False,
            ) or [""]

            out.extend([indent + x for x in wrapped])

        return out

    def box_rule(ch: str = "-") -> None:
        print(f"+{ch * (width - 2)}+")

    def box_line(content: str = "") -> None:
        raw = content[:inner_w]
        pad = inner_w - _visible_len(raw)
        if pad > 0:
            raw = raw + (" " * pad)
        print(f"| {raw} |")

    t = series.template
    state = _paint(series.state, series.state.value, color)

    print()
    box_rule("=")
    box_line(f"{t.title} ({state})")
    box_rule("=")

    box_line(f"id: {series.series_id}")
    box_line(f"rule: {format_rule(series.rule)}")
    box_line(f"created: {series.created.isoformat()}")
    box_line(f"last generated: {_iso(series.last_generated_date)}")
    box_line(f"next due: {_iso(series.next_due_date)}")
    box_line(f"completed: {series.total_completed} of {series.total_generated}")

    box_rule()
    box_line(f"priority: {t.priority.value}")
    if t.category:
        box_line(f"category: {t.category}")
    if t.tags:
        box_line(f"tags: {', '.join(t.tags)}")
    if t.estimated_minutes:
        box_line(f"estimate: {format_minutes(t.estimated_minutes)}")

    if t.description and t.description.strip():
        box_rule()
        box_line("Description:")
        for ln in wrap_lines(t.description, indent="  "):
            box_line(ln)

    box_rule("=")
    print()


# ---------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------

def render_stats(stats: SeriesStats) -> None:
    print(f"series:     {stats.total_series}")
    print(f"  active:   {stats.active_series}")
    print(f"  paused:   {stats.paused_series}")
    print(f"  ended:    {stats.ended_series}")
    print(f"generated:  {stats.total_tasks_generated}")
    print(f"completed:  {stats.total_tasks_completed}")
    print(f"completion: {stats.overall_completion_rate}%")


def format_minutes(minutes: int) -> str:
    """90 -> '1h 30m'."""
    if minutes < 60:
        return f"{minutes}m"

    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"{hours}h"

    return f"{hours}h {mins}m"
