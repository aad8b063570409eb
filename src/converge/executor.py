"""Dependency-ordered task execution with bounded retry.

For every task the executor runs one pass of:

    find -> build_changes -> check_changes -> render

in dependency order. Independent tasks run concurrently on a bounded thread
pool. The run loop itself stays on the calling thread and is the only place
that dispatches work, so retries wait on the loop's timer rather than
sleeping inside a worker.

FAILURE HANDLING:
- Pre-flight errors (cycles, unknown references, unsupported renderers) are
  raised from run() before any task is observed.
- A failed task skips all of its transitive dependents. Independent branches
  keep going; there is no rollback.
- TryAgainLaterError re-queues the task with exponential backoff and jitter
  until the attempt or wall-clock budget runs out.
- cancel() (or Ctrl-C) lets in-flight attempts finish, dispatches nothing new
  and marks the rest as skipped.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import Any

from .changes import build_changes
from .config import MAX_TASKS_PER_RUN, EngineConfig
from .context import RunContext
from .errors import (
    DependencyFailedError,
    InsufficientAccessError,
    LifecycleViolationError,
    PreflightError,
    RetryBudgetExceededError,
    RunCancelledError,
    TryAgainLaterError,
)
from .graph import TaskGraph, build_task_graph
from .lifecycle import Lifecycle, LifecycleResolution, LifecycleResolver
from .report import RunReport, TaskOutcome, TaskResult, TaskState
from .task import ShouldCreate

logger = logging.getLogger(__name__)

# Upper bound on a single wait so cancellation is noticed promptly
LOOP_POLL_SECONDS = 0.5


class TaskExecutor:
    """Runs one reconciliation pass over a task set.

    Thread Safety:
        run() must be called from a single thread. cancel() may be called
        from any thread, including from inside a task.
    """

    def __init__(
        self,
        ctx: RunContext,
        config: EngineConfig | None = None,
        lifecycle_resolver: LifecycleResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the executor.

        Args:
            ctx: Run context holding the target, cloud and task arena.
            config: Scheduler and retry settings.
            lifecycle_resolver: Lifecycle overrides applied on top of each
                task's declared lifecycle.
            clock: Monotonic clock, replaceable in tests.
        """
        self._ctx = ctx
        self._config = config or ctx.engine or EngineConfig()
        self._resolver = lifecycle_resolver or LifecycleResolver()
        self._clock = clock

        self._cancel_event = threading.Event()
        # Guards the status table in self._report
        self._lock = threading.Lock()
        self._report = RunReport()
        self._lifecycles: dict[str, LifecycleResolution] = {}
        self._first_attempt_at: dict[str, float] = {}
        self._sequence = itertools.count()

    @property
    def report(self) -> RunReport:
        return self._report

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop dispatching new work. In-flight attempts are allowed to finish."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested")
        self._cancel_event.set()

    # =========================================================================
    # Pre-flight
    # =========================================================================

    def preflight(self) -> TaskGraph:
        """Validate the task set before anything is observed.

        Raises:
            PreflightError: On too many tasks, a cycle, an unknown reference
                or a task kind the target cannot render.
        """
        tasks = self._ctx.tasks
        if len(tasks) > MAX_TASKS_PER_RUN:
            raise PreflightError(f"Too many tasks: {len(tasks)} (max {MAX_TASKS_PER_RUN})")

        graph = build_task_graph(tasks)

        self._lifecycles = {
            name: self._resolver.resolve(task.kind, name, task.lifecycle)
            for name, task in tasks.items()
        }
        renderable = [
            task for name, task in tasks.items()
            if not self._lifecycles[name].lifecycle.observes_only
        ]
        self._ctx.renderers.check_supported(renderable, self._ctx.target)
        return graph

    # =========================================================================
    # Run loop
    # =========================================================================

    def run(self) -> RunReport:
        """Execute every task once and finalize the target.

        Returns:
            RunReport with per-task results.

        Raises:
            PreflightError: Before any task is touched.
        """
        graph = self.preflight()
        ctx = self._ctx

        self._report = RunReport(
            results={
                name: TaskResult(name=name, kind=task.kind)
                for name, task in sorted(ctx.tasks.items())
            }
        )
        logger.info(
            "Starting run",
            extra={
                "target": ctx.target.kind.value,
                "tasks": len(ctx.tasks),
                "max_concurrency": self._config.max_concurrency,
            },
        )

        done: set[str] = set()
        started: set[str] = set()
        in_flight: dict[Future[TaskOutcome], str] = {}
        retries: list[tuple[float, int, str]] = []

        with ThreadPoolExecutor(
            max_workers=self._config.max_concurrency,
            thread_name_prefix="converge-task",
        ) as pool:

            def dispatch(name: str) -> None:
                started.add(name)
                with self._lock:
                    result = self._report.results[name]
                    result.attempts += 1
                    if result.start_time is None:
                        result.start_time = datetime.now(UTC)
                self._first_attempt_at.setdefault(name, self._clock())
                in_flight[pool.submit(self._attempt, name)] = name

            while True:
                try:
                    if not self.cancelled:
                        now = self._clock()
                        while retries and retries[0][0] <= now:
                            _, _, name = heapq.heappop(retries)
                            dispatch(name)
                        for name in graph.get_ready(done, started):
                            dispatch(name)

                    if not in_flight and (not retries or self.cancelled):
                        break

                    timeout = LOOP_POLL_SECONDS
                    if retries:
                        timeout = min(timeout, max(0.0, retries[0][0] - self._clock()))

                    if not in_flight:
                        self._cancel_event.wait(timeout)
                        continue

                    finished, _ = wait(in_flight, timeout=timeout, return_when=FIRST_COMPLETED)
                    for future in finished:
                        # Removed only after handling; an interrupted completion is handled again
                        self._handle_completion(in_flight[future], future, graph, done, started, retries)
                        del in_flight[future]
                except KeyboardInterrupt:
                    self.cancel()

        self._finalize()
        return self._report

    def _handle_completion(
        self,
        name: str,
        future: Future[TaskOutcome],
        graph: TaskGraph,
        done: set[str],
        started: set[str],
        retries: list[tuple[float, int, str]],
    ) -> None:
        if self._report.results[name].state.is_terminal:
            return

        error = future.exception()
        if error is None:
            self._complete(name, future.result())
            done.add(name)
            return

        if isinstance(error, TryAgainLaterError):
            retry_at = self._schedule_retry(name, error)
            if retry_at is not None:
                heapq.heappush(retries, (retry_at, next(self._sequence), name))
                return
            attempts = self._report.results[name].attempts
            error = RetryBudgetExceededError(name, attempts, error.reason)

        self._fail(name, error, graph, started)

    def _schedule_retry(self, name: str, error: TryAgainLaterError) -> float | None:
        """Work out when to retry a task, or None if the budget is exhausted."""
        attempt = self._report.results[name].attempts
        elapsed = self._clock() - self._first_attempt_at[name]

        if attempt >= self._config.max_task_attempts:
            return None
        if elapsed >= self._config.max_task_duration_seconds:
            return None

        # Exponential backoff with jitter
        backoff = min(
            self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
            self._config.retry_backoff_max_seconds,
        )
        jitter = random.uniform(0, backoff * 0.2)
        wait_time = backoff + jitter

        logger.info(
            "Task not ready, retrying",
            extra={
                "task": name,
                "attempt": attempt,
                "max_attempts": self._config.max_task_attempts,
                "wait_seconds": round(wait_time, 2),
                "reason": error.reason,
            },
        )
        return self._clock() + wait_time

    def _complete(self, name: str, outcome: TaskOutcome) -> None:
        with self._lock:
            result = self._report.results[name]
            result.state = TaskState.RENDERED
            result.outcome = outcome
            result.end_time = datetime.now(UTC)

        logger.info(
            "Task complete",
            extra={
                "task": name,
                "kind": result.kind,
                "outcome": outcome.value,
                "attempts": result.attempts,
                "duration_seconds": result.duration_seconds,
            },
        )

    def _fail(self, name: str, error: BaseException, graph: TaskGraph, started: set[str]) -> None:
        skipped: list[str] = []
        with self._lock:
            result = self._report.results[name]
            result.state = TaskState.FAILED
            result.outcome = TaskOutcome.FAILED
            result.error = error if isinstance(error, Exception) else RuntimeError(str(error))
            result.end_time = datetime.now(UTC)

            for dependent in sorted(graph.transitive_dependents(name)):
                dep_result = self._report.results[dependent]
                if dep_result.state.is_terminal:
                    continue
                dep_result.state = TaskState.SKIPPED
                dep_result.outcome = TaskOutcome.SKIPPED
                dep_result.error = DependencyFailedError(dependent, name)
                dep_result.caused_by = name
                started.add(dependent)
                skipped.append(dependent)

        logger.error(
            "Task failed",
            extra={
                "task": name,
                "kind": result.kind,
                "error": str(error),
                "error_type": type(error).__name__,
                "attempts": result.attempts,
                "skipped_dependents": skipped,
            },
        )

    def _finalize(self) -> None:
        """Mark undispatched tasks as skipped and finish the target."""
        with self._lock:
            for result in self._report.results.values():
                if result.state.is_terminal:
                    continue
                result.state = TaskState.SKIPPED
                result.outcome = TaskOutcome.SKIPPED
                result.error = RunCancelledError(f"Task '{result.name}' was not run: run cancelled")
            self._report.cancelled = self.cancelled
            self._report.end_time = datetime.now(UTC)

        self._report.log()
        self._ctx.target.finish(self._report)

    # =========================================================================
    # Single attempt (worker thread)
    # =========================================================================

    def _set_state(self, result: TaskResult, state: TaskState) -> None:
        with self._lock:
            result.state = state

    def _warn(self, result: TaskResult, message: str, **extra: Any) -> None:
        with self._lock:
            result.warnings.append(message)
        logger.warning(message, extra={"task": result.name, "kind": result.kind, **extra})

    def _attempt(self, name: str) -> TaskOutcome:
        """Run one find/diff/check/render attempt for a task.

        Returns:
            The outcome on success. Errors propagate to the run loop.
        """
        ctx = self._ctx
        target = ctx.target
        task = ctx.tasks[name]
        result = self._report.results[name]
        lifecycle = self._lifecycles[name].lifecycle

        if lifecycle == Lifecycle.IGNORE:
            logger.debug("Task ignored", extra={"task": name, "reason": self._lifecycles[name].reason})
            return TaskOutcome.UNCHANGED

        actual = task.find(ctx) if target.observes else None
        self._set_state(result, TaskState.OBSERVED)

        changes = build_changes(actual, task, ctx.resolve_provider_id)
        with self._lock:
            result.state = TaskState.DIFFED
            result.record_changes(actual, changes)

        if isinstance(task, ShouldCreate) and not task.should_create(actual, changes):
            logger.info("Task declined creation", extra={"task": name, "kind": task.kind})
            return TaskOutcome.UNCHANGED

        if lifecycle.observes_only:
            return self._check_existing(result, lifecycle, actual is not None, changes)

        if actual is not None and changes.is_empty():
            return TaskOutcome.UNCHANGED

        task.check_changes(actual, changes)
        self._set_state(result, TaskState.VALIDATED)

        render = ctx.renderers.lookup(task.kind, target)
        try:
            render(ctx, actual, task, changes)
        except InsufficientAccessError as e:
            if lifecycle != Lifecycle.WARN_IF_INSUFFICIENT_ACCESS:
                raise
            self._warn(result, f"Insufficient access, changes not applied: {e}")
            return TaskOutcome.UNCHANGED

        return TaskOutcome.CREATED if actual is None else TaskOutcome.UPDATED

    def _check_existing(
        self, result: TaskResult, lifecycle: Lifecycle, exists: bool, changes: Any
    ) -> TaskOutcome:
        """Apply an exists-only lifecycle. Such tasks are never rendered."""
        if not self._ctx.target.observes:
            self._warn(result, "Task is managed elsewhere and not rendered by this target")
            return TaskOutcome.UNCHANGED

        if not exists:
            raise LifecycleViolationError(
                f"Lifecycle is {lifecycle.value}, but {result.kind}/{result.name} was not found"
            )

        if changes.is_empty():
            return TaskOutcome.UNCHANGED

        fields = list(changes)
        if lifecycle == Lifecycle.EXISTS_AND_VALIDATES:
            raise LifecycleViolationError(
                f"Lifecycle is {lifecycle.value}, but {result.kind}/{result.name} "
                f"differs in fields: {fields}"
            )

        self._warn(result, f"Existing resource differs from desired state: {fields}", fields=fields)
        return TaskOutcome.UNCHANGED


def run_tasks(
    ctx: RunContext,
    config: EngineConfig | None = None,
    lifecycle_resolver: LifecycleResolver | None = None,
) -> RunReport:
    """Convenience wrapper running a single pass over ctx.tasks."""
    return TaskExecutor(ctx, config=config, lifecycle_resolver=lifecycle_resolver).run()
