"""Per-run context passed into every task lifecycle call.

Tasks receive the context as an argument and must not keep it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .config import ClusterConfig
from .target import ProviderIdRegistry, RenderRegistry, Target
from .task import CompareWithID, Task, TaskRef

if TYPE_CHECKING:
    from .config import EngineConfig


@runtime_checkable
class Cloud(Protocol):
    """Narrow handle on a cloud provider's SDK clients."""

    provider: str


@dataclass
class RunContext:
    """Everything a task needs during one run.

    Attributes:
        target: The active rendering backend.
        cloud: Cloud handle, None for document targets that never call out.
        cluster: Cluster-wide configuration.
        tasks: The task arena keyed by name.
        renderers: Render functions for this run.
    """

    target: Target
    cloud: Cloud | Any | None
    cluster: ClusterConfig
    tasks: dict[str, Task] = field(default_factory=dict)
    renderers: RenderRegistry = field(default_factory=RenderRegistry)
    engine: EngineConfig | None = None

    @property
    def ids(self) -> ProviderIdRegistry:
        return self.target.ids

    def task(self, ref: TaskRef | str) -> Task:
        """Resolve a symbolic reference to the task it names.

        Raises:
            KeyError: If the name is not in the task set.
        """
        name = ref if isinstance(ref, str) else ref.name
        if name is None:
            raise KeyError(f"Reference {ref!r} carries no task name")
        return self.tasks[name]

    def resolve_provider_id(self, name: str) -> str | None:
        """Provider ID of a task, if its kind compares references by ID."""
        task = self.tasks.get(name)
        if isinstance(task, CompareWithID):
            return task.compare_with_id(self)
        return None

    def provider_id(self, ref: TaskRef | str | None) -> str | None:
        """Provider ID for a reference, falling back to the ID registry."""
        if ref is None:
            return None
        if isinstance(ref, TaskRef):
            if ref.id:
                return ref.id
            ref = ref.name or ""
        return self.ids.get(ref)
