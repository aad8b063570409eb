"""Rendering targets and the render registry.

A target is the only side-effecting object in a run. Exactly one target is
active per run: live API calls, a dry-run plan, or a document backend
(Terraform, CloudFormation). Render functions are registered per
(task kind, target kind) pair so unsupported combinations are detected
before anything is observed.

EXAMPLE:
    registry = RenderRegistry()

    @registry.renderer("Network", TargetKind.API)
    def render_network_api(ctx, actual, expected, changes):
        ...
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from .errors import RenderUnsupportedError

if TYPE_CHECKING:
    from .changes import Changes
    from .context import RunContext
    from .report import RunReport
    from .task import Task

logger = logging.getLogger(__name__)


class TargetKind(str, Enum):
    """Rendering backends."""

    API = "api"
    DRYRUN = "dryrun"
    TERRAFORM = "terraform"
    CLOUDFORMATION = "cloudformation"


# (ctx, actual, expected, changes); actual is None when creating
RenderFunc = Callable[["RunContext", "Task | None", "Task", "Changes"], None]


class ProviderIdRegistry:
    """Provider-assigned IDs keyed by task name.

    Written by renderers after a create and by find when an existing object
    is observed, read when a later task resolves a reference.

    Thread Safety:
        All access is serialized with an internal lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: dict[str, str] = {}

    def set(self, name: str, provider_id: str) -> None:
        with self._lock:
            previous = self._ids.get(name)
            self._ids[name] = provider_id
        if previous is not None and previous != provider_id:
            logger.warning(
                "Provider ID changed",
                extra={"task": name, "previous_id": previous, "provider_id": provider_id},
            )

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._ids.get(name)

    def name_for(self, provider_id: str) -> str | None:
        with self._lock:
            for name, value in self._ids.items():
                if value == provider_id:
                    return name
        return None

    def as_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._ids)


class Target(ABC):
    """Base class for rendering backends.

    Class attributes:
        kind: Key used by the render registry.
        observes: Whether tasks are looked up with find. Document targets
            describe the full desired state, so every task is treated as new.
        renders_any_kind: The target handles every task kind generically
            through render_generic.
    """

    kind: ClassVar[TargetKind]
    observes: ClassVar[bool] = True
    renders_any_kind: ClassVar[bool] = False

    def __init__(self) -> None:
        self.ids = ProviderIdRegistry()
        # Serializes writes to the target's sink
        self._lock = threading.Lock()

    def render_generic(
        self, ctx: RunContext, actual: Task | None, expected: Task, changes: Changes
    ) -> None:
        raise RenderUnsupportedError(expected.kind, self.kind.value, [expected.name])

    @abstractmethod
    def finish(self, report: RunReport) -> None:
        """Finalize the target at the end of the run.

        Called exactly once, also after a failed run. Document targets only
        write their output when the run succeeded.
        """


class RenderRegistry:
    """Maps (task kind, target kind) to a render function.

    Registries are plain objects passed through the run context; there is no
    module-level registration.
    """

    def __init__(self) -> None:
        self._renderers: dict[tuple[str, TargetKind], RenderFunc] = {}

    def register(self, task_kind: str, target_kind: TargetKind, func: RenderFunc) -> None:
        key = (task_kind, target_kind)
        if key in self._renderers:
            raise ValueError(f"Renderer already registered for {task_kind} on {target_kind.value}")
        self._renderers[key] = func

    def renderer(self, task_kind: str, target_kind: TargetKind) -> Callable[[RenderFunc], RenderFunc]:
        """Decorator form of register."""

        def decorator(func: RenderFunc) -> RenderFunc:
            self.register(task_kind, target_kind, func)
            return func

        return decorator

    def supports(self, task_kind: str, target: Target) -> bool:
        return target.renders_any_kind or (task_kind, target.kind) in self._renderers

    def lookup(self, task_kind: str, target: Target) -> RenderFunc:
        """Return the render function for a task kind on the given target.

        Raises:
            RenderUnsupportedError: If no renderer exists.
        """
        func = self._renderers.get((task_kind, target.kind))
        if func is not None:
            return func
        if target.renders_any_kind:
            return lambda ctx, actual, expected, changes: target.render_generic(
                ctx, actual, expected, changes
            )
        raise RenderUnsupportedError(task_kind, target.kind.value)

    def check_supported(self, tasks: Iterable[Task], target: Target) -> None:
        """Verify every task can be rendered before the run starts.

        Raises:
            RenderUnsupportedError: Listing every unsupported kind and the
                tasks of those kinds.
        """
        unsupported: dict[str, list[str]] = {}
        for task in tasks:
            if not self.supports(task.kind, target):
                unsupported.setdefault(task.kind, []).append(task.name)

        if unsupported:
            kinds = sorted(unsupported)
            names = [name for kind in kinds for name in unsupported[kind]]
            raise RenderUnsupportedError(", ".join(kinds), target.kind.value, names)

    def kinds_for(self, target_kind: TargetKind) -> list[str]:
        return sorted(kind for kind, tk in self._renderers if tk == target_kind)
