"""Run results: per-task state, outcome and aggregate status."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .changes import Changes, FieldChange
from .errors import RunCancelledError

logger = logging.getLogger(__name__)

# Process exit codes
EXIT_SUCCESS = 0
EXIT_TASK_FAILURE = 1
EXIT_PREFLIGHT_FAILURE = 2


class TaskState(str, Enum):
    """Per-pass state of one task.

    unvisited -> observed -> diffed -> validated -> rendered | failed | skipped
    """

    UNVISITED = "unvisited"
    OBSERVED = "observed"
    DIFFED = "diffed"
    VALIDATED = "validated"
    RENDERED = "rendered"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.RENDERED, TaskState.FAILED, TaskState.SKIPPED)


class TaskOutcome(str, Enum):
    """What the run did for one task."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskResult:
    """Result of processing a single task in one run."""

    name: str
    kind: str
    state: TaskState = TaskState.UNVISITED
    outcome: TaskOutcome | None = None
    attempts: int = 0
    error: Exception | None = None
    # Upstream task whose failure caused this task to be skipped
    caused_by: str | None = None
    changes: list[FieldChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.state == TaskState.RENDERED

    def record_changes(self, actual: Any, changes: Changes) -> None:
        self.changes = changes.field_changes(actual)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        if self.caused_by:
            data["caused_by"] = self.caused_by
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class RunReport:
    """Aggregate result of one run, keyed by task name."""

    results: dict[str, TaskResult] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """The run succeeded only if every task was rendered."""
        return all(result.success for result in self.results.values())

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_TASK_FAILURE

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def result(self, name: str) -> TaskResult:
        return self.results[name]

    def by_outcome(self, outcome: TaskOutcome) -> list[str]:
        return sorted(name for name, r in self.results.items() if r.outcome == outcome)

    def failures(self) -> dict[str, Exception | None]:
        return {
            name: r.error
            for name, r in sorted(self.results.items())
            if r.outcome == TaskOutcome.FAILED
        }

    def summary(self) -> dict[str, int]:
        """Count of tasks per outcome."""
        counts = {outcome.value: 0 for outcome in TaskOutcome}
        for result in self.results.values():
            if result.outcome is not None:
                counts[result.outcome.value] += 1
        return counts

    def field_changes(self) -> list[tuple[str, str, Any, Any]]:
        """Ordered (task, field, old, new) tuples for every changed task."""
        rows: list[tuple[str, str, Any, Any]] = []
        for name in sorted(self.results):
            for change in self.results[name].changes:
                rows.append((name, change.field, change.old, change.new))
        return rows

    def format_summary(self) -> str:
        """Aggregate status followed by one line per task.

        Failures carry their error, skips name the upstream task that failed.
        """
        counts = self.summary()
        parts = [f"{count} {outcome}" for outcome, count in counts.items() if count]
        status = "succeeded" if self.success else "failed"
        if self.cancelled:
            status = "cancelled"
        lines = [f"Run {status}: " + (", ".join(parts) if parts else "no tasks")]
        for name in sorted(self.results):
            lines.append(f"  {name}: {_describe_result(self.results[name])}")
        return "\n".join(lines)

    def log(self) -> None:
        """Log the run result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "outcomes": self.summary(),
            "tasks": [self.results[name].to_dict() for name in sorted(self.results)],
        }
        if self.success:
            logger.info("Run completed", extra=extra)
        else:
            extra["failed_tasks"] = sorted(self.failures())
            logger.error("Run failed", extra=extra)


def _describe_result(result: TaskResult) -> str:
    if result.outcome is None:
        return result.state.value
    match result.outcome:
        case TaskOutcome.FAILED:
            return f"failed: {result.error}"
        case TaskOutcome.SKIPPED if result.caused_by:
            return f"skipped (dependency {result.caused_by} failed)"
        case TaskOutcome.SKIPPED if isinstance(result.error, RunCancelledError):
            return "skipped (run cancelled)"
    if result.warnings:
        return f"{result.outcome.value} (warnings: {len(result.warnings)})"
    return result.outcome.value
