"""Plan target: records what would change without touching anything."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Any, ClassVar

from .target import Target, TargetKind

if TYPE_CHECKING:
    from .changes import Changes
    from .context import RunContext
    from .report import RunReport
    from .task import Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanEntry:
    """One planned field change."""

    task: str
    kind: str
    field: str
    old: Any
    new: Any
    create: bool


@dataclass(frozen=True)
class _Render:
    task: str
    kind: str
    create: bool
    changes: tuple[tuple[str, Any, Any], ...]


class DryRunTarget(Target):
    """Renders every task kind by recording its changes.

    find still runs, so the plan reflects real observed state.
    """

    kind: ClassVar[TargetKind] = TargetKind.DRYRUN
    observes: ClassVar[bool] = True
    renders_any_kind: ClassVar[bool] = True

    def __init__(self, out: IO[str] | None = None) -> None:
        super().__init__()
        self._out = out
        self._renders: dict[str, _Render] = {}

    def render_generic(
        self, ctx: RunContext, actual: Task | None, expected: Task, changes: Changes
    ) -> None:
        rows = tuple((c.field, c.old, c.new) for c in changes.field_changes(actual))
        with self._lock:
            self._renders[expected.name] = _Render(
                task=expected.name,
                kind=expected.kind,
                create=actual is None,
                changes=rows,
            )

    def has_changes(self) -> bool:
        with self._lock:
            return bool(self._renders)

    def planned_creates(self) -> list[str]:
        with self._lock:
            return sorted(name for name, r in self._renders.items() if r.create)

    def planned_updates(self) -> list[str]:
        with self._lock:
            return sorted(name for name, r in self._renders.items() if not r.create)

    def plan_entries(self) -> list[PlanEntry]:
        """All recorded field changes, ordered by task name."""
        with self._lock:
            renders = sorted(self._renders.values(), key=lambda r: r.task)
        return [
            PlanEntry(task=r.task, kind=r.kind, field=f, old=old, new=new, create=r.create)
            for r in renders
            for f, old, new in r.changes
        ]

    def format_plan(self) -> str:
        with self._lock:
            renders = sorted(self._renders.values(), key=lambda r: r.task)

        creates = [r for r in renders if r.create]
        updates = [r for r in renders if not r.create]
        if not renders:
            return "No changes need to be applied"

        lines: list[str] = []
        if creates:
            lines.append("Will create resources:")
            for r in creates:
                lines.append(f"  {r.kind}/{r.task}")
                for field, _old, new in r.changes:
                    lines.append(f"  \t{field}\t{_format_value(new)}")
            lines.append("")
        if updates:
            lines.append("Will modify resources:")
            for r in updates:
                lines.append(f"  {r.kind}/{r.task}")
                for field, old, new in r.changes:
                    lines.append(f"  \t{field}\t{_format_value(old)} -> {_format_value(new)}")
            lines.append("")
        return "\n".join(lines)

    def finish(self, report: RunReport) -> None:
        out = self._out or sys.stdout
        out.write(self.format_plan() + "\n")
        out.write(report.format_summary() + "\n")
        out.flush()


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)
