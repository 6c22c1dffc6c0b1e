# src/recurctl/engine/validate.py

"""
Series validation rules.

This module validates recurrence rules and series templates before a
series is created or reconfigured.

Responsibilities:
- rule field ranges (interval, day of month, occurrence cap),
- pattern-specific requirements (explicit weekly days),
- template sanity (title, tags, estimates).

Only the fields relevant to a rule's pattern are checked; stale fields
for other patterns are left alone.
"""

from dataclasses import dataclass
from datetime import date
from typing import Final, Optional, Sequence

from .model import Pattern, RecurrenceRule, TaskTemplate


# ---------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------

MAX_TITLE_LEN: Final[int] = 200
MAX_DESCRIPTION_LEN: Final[int] = 2000
MAX_CATEGORY_LEN: Final[int] = 30
MAX_TAGS: Final[int] = 10
MAX_ESTIMATED_MINUTES: Final[int] = 10080  # one week


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class ValidationError(Exception):
    """
    Fatal validation error used for command flow control.

    Raised when input must be rejected before any state is written.
    Carries the individual field-level issues, if any.
    """

    def __init__(self, message: str, issues: Sequence["ValidationIssue"] = ()) -> None:
        super().__init__(message)
        self.issues = tuple(issues)

    @classmethod
    def from_result(cls, result: "ValidationResult") -> "ValidationError":
        lines = [f"{i.field}: {i.message}" for i in result.issues]
        return cls("Invalid series: " + "; ".join(lines), result.issues)


# ---------------------------------------------------------------------
# Result objects
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """
    A single validation problem.

    `code` is a stable identifier suitable for tests and future filtering;
    `field` names the offending input field.
    """

    code: str
    field: str
    message: str


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """
    Aggregated validation result for a series definition.
    """

    issues: Sequence[ValidationIssue]

    @property
    def ok(self) -> bool:
        return not self.issues

    def raise_for_issues(self) -> None:
        if not self.ok:
            raise ValidationError.from_result(self)


# ---------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------

def validate_rule(
    rule: RecurrenceRule,
    *,
    start_date: Optional[date] = None,
) -> ValidationResult:
    """
    Validate a recurrence rule.

    When `start_date` is given, the rule's end date must not precede it
    (otherwise the first instance would already violate the end date).
    """
    issues: list[ValidationIssue] = []

    if not isinstance(rule.pattern, Pattern):
        issues.append(
            ValidationIssue(
                code="pattern_invalid",
                field="pattern",
                message=f"Unknown pattern '{rule.pattern}'",
            )
        )

    if not _is_int(rule.interval) or rule.interval < 1:
        issues.append(
            ValidationIssue(
                code="interval_invalid",
                field="interval",
                message="Interval must be a whole number >= 1",
            )
        )

    if rule.max_occurrences is not None:
        if not _is_int(rule.max_occurrences) or rule.max_occurrences < 1:
            issues.append(
                ValidationIssue(
                    code="max_occurrences_invalid",
                    field="max_occurrences",
                    message="Maximum occurrences must be a whole number >= 1",
                )
            )

    if rule.pattern is Pattern.MONTHLY and rule.day_of_month is not None:
        if not _is_int(rule.day_of_month) or not 1 <= rule.day_of_month <= 31:
            issues.append(
                ValidationIssue(
                    code="day_of_month_invalid",
                    field="day_of_month",
                    message="Day of month must be between 1 and 31",
                )
            )

    if rule.pattern is Pattern.WEEKLY and rule.days_of_week is not None:
        if not rule.days_of_week:
            issues.append(
                ValidationIssue(
                    code="days_of_week_empty",
                    field="days_of_week",
                    message="Select at least one day of the week",
                )
            )

    if start_date is not None and rule.end_date is not None:
        if rule.end_date < start_date:
            issues.append(
                ValidationIssue(
                    code="end_before_start",
                    field="end_date",
                    message=(
                        f"End date {rule.end_date.isoformat()} is before "
                        f"start date {start_date.isoformat()}"
                    ),
                )
            )

    return ValidationResult(issues=tuple(issues))


def validate_template(template: TaskTemplate) -> ValidationResult:
    """
    Validate the fields copied onto every generated instance.
    """
    issues: list[ValidationIssue] = []

    title = (template.title or "").strip()
    if not title:
        issues.append(
            ValidationIssue(code="title_empty", field="title", message="Task title is required")
        )
    elif len(title) > MAX_TITLE_LEN:
        issues.append(
            ValidationIssue(
                code="title_too_long",
                field="title",
                message=f"Task title must be less than {MAX_TITLE_LEN} characters",
            )
        )

    if template.description and len(template.description) > MAX_DESCRIPTION_LEN:
        issues.append(
            ValidationIssue(
                code="description_too_long",
                field="description",
                message=f"Description must be less than {MAX_DESCRIPTION_LEN} characters",
            )
        )

    if template.category and len(template.category) > MAX_CATEGORY_LEN:
        issues.append(
            ValidationIssue(
                code="category_too_long",
                field="category",
                message=f"Category must be less than {MAX_CATEGORY_LEN} characters",
            )
        )

    if len(template.tags) > MAX_TAGS:
        issues.append(
            ValidationIssue(
                code="too_many_tags",
                field="tags",
                message=f"Maximum {MAX_TAGS} tags allowed",
            )
        )

    minutes = template.estimated_minutes
    if minutes is not None:
        if not _is_int(minutes) or not 1 <= minutes <= MAX_ESTIMATED_MINUTES:
            issues.append(
                ValidationIssue(
                    code="estimate_invalid",
                    field="estimated_minutes",
                    message=f"Estimated minutes must be between 1 and {MAX_ESTIMATED_MINUTES}",
                )
            )

    return ValidationResult(issues=tuple(issues))


def validate_series(
    template: TaskTemplate,
    rule: RecurrenceRule,
    *,
    start_date: Optional[date] = None,
) -> ValidationResult:
    """
    Validate a full series definition (template + rule).
    """
    issues = [
        *validate_template(template).issues,
        *validate_rule(rule, start_date=start_date).issues,
    ]
    return ValidationResult(issues=tuple(issues))


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
