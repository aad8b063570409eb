"""Task dependency graph construction and validation.

Edges point from a consumer to the producers it needs. They come from:
1. Reference fields (a Subnet referencing its Network)
2. Explicit ``depends_on`` declarations
3. ``get_dependencies`` on tasks implementing HasDependencies

The graph is validated before any task is touched: unknown names and cycles
abort the run as pre-flight errors.

EXAMPLE:
```yaml
tasks:
  - kind: Network
    name: main
  - kind: Subnet
    name: main-a
    network: main      # edge main-a -> main
```
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import DependencyCycleError, UnknownDependencyError
from .task import HasDependencies, Task

logger = logging.getLogger(__name__)


class EdgeSource(str, Enum):
    """Where a dependency edge was declared."""

    REFERENCE = "reference"
    DEPENDS_ON = "depends_on"
    CAPABILITY = "capability"


@dataclass
class TaskNode:
    """A node in the task graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)
    sources: dict[str, EdgeSource] = field(default_factory=dict)


@dataclass
class TaskGraph:
    """Directed acyclic graph of task dependencies."""

    nodes: dict[str, TaskNode] = field(default_factory=dict)

    def add_node(
        self,
        name: str,
        depends_on: list[str] | None = None,
        source: EdgeSource = EdgeSource.DEPENDS_ON,
    ) -> None:
        """Add a node, or extra edges to an existing node.

        Args:
            name: Task name.
            depends_on: Names of tasks this task needs first.
            source: Where these edges come from.
        """
        node = self.nodes.setdefault(name, TaskNode(name=name))
        for dep in depends_on or []:
            if dep not in node.depends_on:
                node.depends_on.append(dep)
                node.sources[dep] = source

    def validate(self) -> None:
        """Validate the graph for unknown names and cycles.

        Raises:
            UnknownDependencyError: If an edge points at a missing node.
            DependencyCycleError: If a cycle is detected.
        """
        for name in sorted(self.nodes):
            missing = [dep for dep in self.nodes[name].depends_on if dep not in self.nodes]
            if missing:
                raise UnknownDependencyError(name, missing)

        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if processed != len(self.nodes):
            remaining = {node for node, degree in in_degree.items() if degree > 0}
            raise DependencyCycleError(self._find_cycle(remaining))

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one cycle path among the nodes Kahn's algorithm left behind.

        The path starts and ends with the same name, e.g. [a, b, c, a].
        """
        visiting: list[str] = []
        visited: set[str] = set()

        def visit(name: str) -> list[str] | None:
            if name in visiting:
                return visiting[visiting.index(name):] + [name]
            if name in visited:
                return None
            visiting.append(name)
            for dep in sorted(self.nodes[name].depends_on):
                if dep in candidates:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            visiting.pop()
            visited.add(name)
            return None

        for start in sorted(candidates):
            cycle = visit(start)
            if cycle:
                return cycle
        return sorted(candidates)

    def topological_sort(self) -> list[str]:
        """Return task names in dependency order (dependencies first).

        Ties are broken alphabetically so the order is deterministic.

        Raises:
            DependencyCycleError: If a cycle is detected.
        """
        self.validate()

        dependents = self.dependents_map()
        in_degree: dict[str, int] = {
            name: len(node.depends_on) for name, node in self.nodes.items()
        }

        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def dependents_map(self) -> dict[str, list[str]]:
        """Reverse adjacency: producer name to the names that need it."""
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
        return dependents

    def transitive_dependents(self, name: str) -> set[str]:
        """Every task that directly or indirectly depends on name."""
        dependents = self.dependents_map()
        seen: set[str] = set()
        stack = list(dependents.get(name, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dependents[current])
        return seen

    def get_ready(self, done: set[str], started: set[str]) -> list[str]:
        """Get tasks whose dependencies are all done and that have not started.

        Args:
            done: Names of tasks that reached the rendered state.
            started: Names already dispatched or finished in any state.

        Returns:
            Sorted list of names that can be dispatched now.
        """
        ready = []
        for node in self.nodes.values():
            if node.name in started:
                continue
            if all(dep in done for dep in node.depends_on):
                ready.append(node.name)
        return sorted(ready)


def find_task_dependencies(task: Task, tasks: Mapping[str, Task]) -> list[tuple[str, EdgeSource]]:
    """Collect the producers a task depends on, with the origin of each edge."""
    deps: list[tuple[str, EdgeSource]] = []
    seen: set[str] = set()

    def add(name: str, source: EdgeSource) -> None:
        if name not in seen:
            seen.add(name)
            deps.append((name, source))

    for name in task.referenced_names():
        add(name, EdgeSource.REFERENCE)
    for name in task.depends_on:
        add(name, EdgeSource.DEPENDS_ON)
    if isinstance(task, HasDependencies):
        for name in task.get_dependencies(tasks):
            add(name, EdgeSource.CAPABILITY)
    return deps


def build_task_graph(tasks: Mapping[str, Task]) -> TaskGraph:
    """Build and validate the dependency graph for a task set.

    Args:
        tasks: Tasks keyed by name.

    Returns:
        A validated TaskGraph.

    Raises:
        ValueError: If a key does not match its task's name.
        DependencyCycleError: On a self reference or a cycle.
        UnknownDependencyError: On a reference to a task not in the set.
    """
    graph = TaskGraph()
    for name in sorted(tasks):
        task = tasks[name]
        if task.name != name:
            raise ValueError(f"Task registered as '{name}' is named '{task.name}'")

        graph.add_node(name)
        for dep, source in find_task_dependencies(task, tasks):
            if dep == name:
                raise DependencyCycleError([name, name])
            if dep not in tasks:
                raise UnknownDependencyError(name, [dep])
            graph.add_node(name, [dep], source)

    graph.validate()
    logger.debug(
        "Task graph built",
        extra={
            "tasks": len(graph.nodes),
            "edges": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
