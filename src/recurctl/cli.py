# src/recurctl/cli.py

"""
Command-line interface for recurctl.

This module:
- defines argument parsing and subcommands,
- delegates storage and domain logic to engine modules,
- turns engine errors into messages and exit codes.

The store lives in `<dir>/.recurring/` (one YAML file per record).
"""

import argparse
import logging
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Optional

from recurctl.engine.config import Settings
from recurctl.engine.manager import SeriesLifecycleManager
from recurctl.engine.model import Pattern, Priority, RecurrenceRule, TaskStatus, TaskTemplate, Weekday
from recurctl.engine.parse import ParseError
from recurctl.engine.recurrence import format_rule
from recurctl.engine.render import (
    render_instances,
    render_series_detail,
    render_series_list,
    render_stats,
)
from recurctl.engine.store import OperationCancelled, StorageError, YamlStore
from recurctl.engine.validate import ValidationError


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-C",
        "--cd",
        type=str,
        default=".",
        help="Work as if current directory is this path (default: .)",
    )
    p.add_argument(
        "--user",
        type=str,
        default=None,
        help="User id (default: $RECURCTL_USER or 'local')",
    )


def _add_rule_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--pattern",
        type=str,
        required=True,
        choices=[x.value for x in Pattern],
        help="Recurrence unit",
    )
    p.add_argument("--every", type=int, default=1, help="Interval: every N units (default: 1)")
    p.add_argument(
        "--on",
        action="append",
        default=None,
        help="Weekday(s) for weekly rules, e.g. 'mon,wed,fri' (repeatable)",
    )
    p.add_argument("--day", type=int, default=None, help="Day of month for monthly rules")
    p.add_argument("--until", type=str, default=None, help="End date (YYYY-MM-DD)")
    p.add_argument("--times", type=int, default=None, help="Maximum number of instances")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="recurctl")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ------------------------------------------------------------------
    # Read-only commands
    # ------------------------------------------------------------------

    p_list = sub.add_parser("list", help="List recurring series")
    p_list.add_argument("--active", action="store_true", help="Only active series")
    p_list.add_argument("--no-color", action="store_true", help="Disable coloured output")
    _add_common(p_list)
    p_list.set_defaults(func=cmd_list)

    p_show = sub.add_parser("show", help="Show a single series (structured view)")
    p_show.add_argument("series_id", help="Series id")
    p_show.add_argument("--no-color", action="store_true", help="Disable coloured output")
    _add_common(p_show)
    p_show.set_defaults(func=cmd_show)

    p_inst = sub.add_parser("instances", help="List task instances of a series")
    p_inst.add_argument("series_id", help="Series id")
    p_inst.add_argument("--no-color", action="store_true", help="Disable coloured output")
    _add_common(p_inst)
    p_inst.set_defaults(func=cmd_instances)

    p_stats = sub.add_parser("stats", help="Show completion statistics")
    _add_common(p_stats)
    p_stats.set_defaults(func=cmd_stats)

    p_describe = sub.add_parser("describe", help="Describe a rule without storing anything")
    _add_rule_args(p_describe)
    p_describe.set_defaults(func=cmd_describe)

    # ------------------------------------------------------------------
    # Create command
    # ------------------------------------------------------------------

    p_new = sub.add_parser("new", help="Create a recurring series and its first task")
    p_new.add_argument("--title", type=str, required=True, help="Task title")
    p_new.add_argument("--description", type=str, default=None, help="Task description")
    p_new.add_argument(
        "--priority",
        type=str,
        default=Priority.MEDIUM.value,
        choices=[x.value for x in Priority],
        help="Task priority",
    )
    p_new.add_argument("--category", type=str, default=None, help="Task category")
    p_new.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    p_new.add_argument("--estimate", type=int, default=None, help="Estimated minutes")
    p_new.add_argument("--start", type=str, default=None, help="First due date (default: today)")
    _add_rule_args(p_new)
    _add_common(p_new)
    p_new.set_defaults(func=cmd_new)

    # ------------------------------------------------------------------
    # Write commands
    # ------------------------------------------------------------------

    p_complete = sub.add_parser("complete", help="Complete a task instance")
    p_complete.add_argument("instance_id", help="Task instance id")
    p_complete.add_argument("--minutes", type=int, default=None, help="Actual minutes spent")
    _add_common(p_complete)
    p_complete.set_defaults(func=cmd_complete)

    p_status = sub.add_parser("status", help="Change task instance status")
    p_status.add_argument("status", choices=[x.value for x in TaskStatus], help="New status")
    p_status.add_argument("instance_id", help="Task instance id")
    _add_common(p_status)
    p_status.set_defaults(func=cmd_status)

    p_pause = sub.add_parser("pause", help="Pause a series (keeps its schedule)")
    p_pause.add_argument("series_id", help="Series id")
    _add_common(p_pause)
    p_pause.set_defaults(func=cmd_pause)

    p_resume = sub.add_parser("resume", help="Resume a paused series")
    p_resume.add_argument("series_id", help="Series id")
    _add_common(p_resume)
    p_resume.set_defaults(func=cmd_resume)

    p_delete = sub.add_parser("delete", help="Delete a series")
    p_delete.add_argument("series_id", help="Series id")
    p_delete.add_argument(
        "--cascade",
        action="store_true",
        help="Also delete every task generated by the series",
    )
    p_delete.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up a cascade delete after this many seconds",
    )
    _add_common(p_delete)
    p_delete.set_defaults(func=cmd_delete)

    p_sweep = sub.add_parser("sweep", help="Generate tasks for due series")
    p_sweep.add_argument("--today", type=str, default=None, help="Reference date (default: today)")
    _add_common(p_sweep)
    p_sweep.set_defaults(func=cmd_sweep)

    return parser


# ---------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------

def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    user = (getattr(args, "user", None) or "").strip()
    if user:
        settings = replace(settings, user_id=user)
    return settings


def _manager(args: argparse.Namespace) -> tuple[SeriesLifecycleManager, Settings]:
    settings = _settings(args)
    root = (Path.cwd() / (args.cd or ".")).resolve()
    store = YamlStore(root / settings.store_dir)
    return SeriesLifecycleManager(store, settings=settings), settings


def _parse_date(raw: Optional[str], name: str) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as e:
        raise ValidationError(f"Invalid {name} date: '{raw}' (expected YYYY-MM-DD)") from e


def _parse_days(raw: Optional[list[str]]) -> Optional[frozenset[Weekday]]:
    if raw is None:
        return None

    tokens = [t.strip() for item in raw for t in item.split(",") if t.strip()]
    try:
        return frozenset(Weekday.parse(t) for t in tokens)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _rule_from_args(args: argparse.Namespace) -> RecurrenceRule:
    return RecurrenceRule(
        pattern=Pattern(args.pattern),
        interval=args.every,
        days_of_week=_parse_days(args.on),
        day_of_month=args.day,
        end_date=_parse_date(args.until, "end"),
        max_occurrences=args.times,
    )


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

def cmd_list(args: argparse.Namespace) -> int:
    mgr, settings = _manager(args)
    series = mgr.list_series(settings.user_id, active_only=bool(args.active))
    render_series_list(series, color=not args.no_color)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    render_series_detail(mgr.get_series(args.series_id), color=not args.no_color)
    return 0


def cmd_instances(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    render_instances(mgr.instances_for_series(args.series_id), color=not args.no_color)
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    mgr, settings = _manager(args)
    render_stats(mgr.stats_for_user(settings.user_id))
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    print(format_rule(_rule_from_args(args)))
    return 0


def cmd_new(args: argparse.Namespace) -> int:
    mgr, settings = _manager(args)

    template = TaskTemplate(
        title=(args.title or "").strip(),
        description=args.description,
        priority=Priority(args.priority),
        category=args.category,
        tags=tuple(t.strip().lower() for t in args.tag if t.strip()),
        estimated_minutes=args.estimate,
    )
    rule = _rule_from_args(args)

    step = mgr.create_series(settings.user_id, template, rule, _parse_date(args.start, "start"))

    print(step.series.series_id)
    if step.instance is not None:
        print(f"  first task due {step.instance.due_date.isoformat()}: {step.instance.instance_id}")
    return 0


def cmd_complete(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    nxt = mgr.complete_instance(args.instance_id, actual_minutes=args.minutes)
    if nxt is not None:
        print(f"next task due {nxt.due_date.isoformat()}: {nxt.instance_id}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    mgr.set_instance_status(args.instance_id, TaskStatus(args.status))
    return 0


def cmd_pause(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    mgr.pause(args.series_id)
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    series = mgr.resume(args.series_id)
    if series.is_ended:
        print(f"Series {series.series_id} has ended; nothing to resume")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    mgr, _ = _manager(args)
    n = mgr.delete_series(args.series_id, cascade=bool(args.cascade), timeout=args.timeout)
    if args.cascade:
        print(f"deleted {n} task(s)")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    mgr, settings = _manager(args)
    n = mgr.sweep(settings.user_id, _parse_date(args.today, "reference"))
    print(f"generated {n} task(s)")
    return 0


# ---------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------

def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG

    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 2

    try:
        return func(args)
    except (ValidationError, StorageError, ParseError, OperationCancelled, ValueError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
