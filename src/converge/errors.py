"""Error taxonomy for the task reconciliation engine.

The executor interprets these families to decide what happens next:

- PreflightError: static problems found before any task is observed.
  The whole run aborts and nothing is touched.
- TaskValidationError / LifecycleViolationError: the delta for one task is
  illegal. That task fails, its dependents are skipped.
- TryAgainLaterError: a retryable signal, not a failure. The task is
  re-queued with backoff until the retry budget is exhausted.
- Anything else raised by find or render is fatal for the task.
"""

from __future__ import annotations


class ConvergeError(Exception):
    """Base class for all engine errors."""

    pass


# =============================================================================
# Pre-flight errors
# =============================================================================


class PreflightError(ConvergeError):
    """Raised before any observation or mutation when the run cannot start."""

    pass


class DependencyCycleError(PreflightError):
    """Raised when the task dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownDependencyError(PreflightError):
    """Raised when a task depends on a name that is not in the task set."""

    def __init__(self, task: str, missing: list[str]) -> None:
        self.task = task
        self.missing = sorted(missing)
        super().__init__(f"Task '{task}' depends on unknown tasks: {self.missing}")


class RenderUnsupportedError(PreflightError):
    """Raised when a task kind has no renderer for the active target."""

    def __init__(self, task_kind: str, target_kind: str, tasks: list[str] | None = None) -> None:
        self.task_kind = task_kind
        self.target_kind = target_kind
        self.tasks = sorted(tasks or [])
        message = f"Task kind '{task_kind}' cannot be rendered by target '{target_kind}'"
        if self.tasks:
            message += f" (tasks: {self.tasks})"
        super().__init__(message)


# =============================================================================
# Per-task errors
# =============================================================================


class TaskValidationError(ConvergeError):
    """Raised by check_changes when a proposed delta is illegal."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class RequiredFieldError(TaskValidationError):
    """A mandatory attribute is absent at creation time."""

    def __init__(self, field: str) -> None:
        super().__init__(field, f"Field is required: {field}")


class CannotChangeFieldError(TaskValidationError):
    """A field declared immutable differs after creation."""

    def __init__(self, field: str) -> None:
        super().__init__(field, f"Field cannot be changed: {field}")


class LifecycleViolationError(ConvergeError):
    """The task's lifecycle policy does not allow the observed situation."""

    pass


class InsufficientAccessError(ConvergeError):
    """The cloud refused an operation for lack of permissions."""

    pass


class TryAgainLaterError(ConvergeError):
    """Retryable signal, e.g. a dependent object is not yet visible."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class RetryBudgetExceededError(ConvergeError):
    """A task kept asking to be retried beyond the configured bounds."""

    def __init__(self, task: str, attempts: int, last_reason: str) -> None:
        self.task = task
        self.attempts = attempts
        self.last_reason = last_reason
        super().__init__(
            f"Task '{task}' did not converge after {attempts} attempts: {last_reason}"
        )


class DependencyFailedError(ConvergeError):
    """Recorded on a skipped task whose upstream dependency failed."""

    def __init__(self, task: str, upstream: str) -> None:
        self.task = task
        self.upstream = upstream
        super().__init__(f"Task '{task}' skipped because '{upstream}' failed")


class RunCancelledError(ConvergeError):
    """Recorded on tasks that were never dispatched because the run was cancelled."""

    pass
