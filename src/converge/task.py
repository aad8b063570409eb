"""Declarative task model.

A task is the desired state of one infrastructure object, identified by a
stable unique name. Concrete kinds subclass Task, declare their attributes as
pydantic fields and enumerate the comparable ones in ``diff_fields``:

    class Subnet(Task):
        kind: ClassVar[str] = "Subnet"
        diff_fields: ClassVar[tuple[FieldSpec, ...]] = (
            FieldSpec("network", FieldKind.REFERENCE, required=True, immutable=True),
            FieldSpec("cidr", required=True, immutable=True),
            FieldSpec("tags", FieldKind.VALUE),
        )

        network: TaskRef | None = None
        cidr: str | None = None
        tags: dict[str, str] | None = None

References to other tasks are symbolic (by name). They are resolved through
the run context, never by holding the other task object.

Optional attributes are three-state: None means unmanaged, a value means
managed, and the UNCHANGED sentinel only ever appears inside Changes.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from pydantic import BaseModel, Field, model_validator

from .errors import CannotChangeFieldError, RequiredFieldError
from .lifecycle import Lifecycle

if TYPE_CHECKING:
    from .changes import Changes
    from .context import RunContext


class FieldKind(str, Enum):
    """How a declared field is compared."""

    SCALAR = "scalar"  # Value equality
    VALUE = "value"  # Deep equality of nested value objects
    SET = "set"  # Multi-valued, order-insensitive
    REFERENCE = "reference"  # Identity of the referenced task
    REFERENCE_SET = "reference_set"  # Order-insensitive set of references


class Normalization(str, Enum):
    """Value normalization applied to both sides before comparison."""

    EMPTY_AS_NONE = "empty_as_none"  # "", [], {} compare equal to None
    CASE_INSENSITIVE = "case_insensitive"
    WHITESPACE = "whitespace"  # Collapse runs of spaces, strip ends


@dataclass(frozen=True)
class FieldSpec:
    """Descriptor for one comparable field of a task kind.

    Attributes:
        name: Attribute name on the task.
        kind: Comparison strategy.
        immutable: Changing the field after creation is a validation error.
        required: The field must be set when the resource is created.
        sort_key: Ordering for SET fields (defaults to the value's repr).
        normalize: Optional normalization for scalar values.
    """

    name: str
    kind: FieldKind = FieldKind.SCALAR
    immutable: bool = False
    required: bool = False
    sort_key: Callable[[Any], Any] | None = None
    normalize: Normalization | None = None

    @property
    def is_reference(self) -> bool:
        return self.kind in (FieldKind.REFERENCE, FieldKind.REFERENCE_SET)


class TaskRef(BaseModel):
    """Symbolic reference to another task.

    Desired tasks reference by name. Observed tasks returned by find may only
    know the provider ID of the referenced object, so either part can be set.
    A plain string validates as a reference by name.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    name: str | None = None
    id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def from_name(cls, data: Any) -> Any:
        """Accept a bare task name."""
        if isinstance(data, str):
            return {"name": data}
        return data

    @model_validator(mode="after")
    def require_name_or_id(self) -> TaskRef:
        if not self.name and not self.id:
            raise ValueError("reference needs a task name or a provider id")
        return self

    def __str__(self) -> str:
        return self.name or self.id or ""


class Task(BaseModel):
    """Base class for every task kind.

    Subclasses set ``kind``, ``diff_fields`` and implement ``find``. Private
    attributes (PrivateAttr) are never compared.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ClassVar[str] = "Task"
    diff_fields: ClassVar[tuple[FieldSpec, ...]] = ()

    name: str = Field(min_length=1, max_length=253)
    lifecycle: Lifecycle = Lifecycle.SYNC

    # Extra ordering constraints on top of those implied by references
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    def find(self, ctx: RunContext) -> Task | None:
        """Observe the current state of this resource.

        Returns:
            A task of the same kind holding the observed values, or None if the
            resource does not exist. Must not mutate anything.
        """
        raise NotImplementedError("Subclasses must implement find")

    def check_changes(self, actual: Task | None, changes: Changes) -> None:
        """Validate a proposed delta before any mutation.

        The default enforces ``required`` on creation and ``immutable`` on
        update. Kinds with extra rules override and call super().

        Raises:
            RequiredFieldError: A required field is unset on creation.
            CannotChangeFieldError: An immutable field differs after creation.
        """
        for spec in self.diff_fields:
            if actual is None:
                if spec.required and getattr(self, spec.name) is None:
                    raise RequiredFieldError(spec.name)
            elif spec.immutable and spec.name in changes:
                raise CannotChangeFieldError(spec.name)

    @classmethod
    def field_spec(cls, name: str) -> FieldSpec | None:
        for spec in cls.diff_fields:
            if spec.name == name:
                return spec
        return None

    def references(self) -> list[TaskRef]:
        """All references held in reference fields, in declaration order."""
        refs: list[TaskRef] = []
        for spec in self.diff_fields:
            if not spec.is_reference:
                continue
            value = getattr(self, spec.name)
            if value is None:
                continue
            if spec.kind == FieldKind.REFERENCE:
                refs.append(value)
            else:
                refs.extend(value)
        return refs

    def referenced_names(self) -> list[str]:
        return [ref.name for ref in self.references() if ref.name]

    def describe(self) -> str:
        return f"{self.kind}/{self.name}"


# =============================================================================
# Optional capabilities
# =============================================================================


@runtime_checkable
class HasDependencies(Protocol):
    """Task with dependencies that are not expressed as reference fields."""

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[str]:
        ...


@runtime_checkable
class CompareWithID(Protocol):
    """Task whose references compare by provider ID rather than by name."""

    def compare_with_id(self, ctx: RunContext) -> str | None:
        ...


@runtime_checkable
class HasAddress(Protocol):
    """Task that exposes network addresses once it exists."""

    def find_addresses(self, ctx: RunContext) -> list[str]:
        ...

    def is_for_api_server(self) -> bool:
        ...


@runtime_checkable
class ShouldCreate(Protocol):
    """Task that may decline creation, e.g. a shared resource owned elsewhere."""

    def should_create(self, actual: Task | None, changes: Changes) -> bool:
        ...


def discover_addresses(ctx: RunContext, api_server_only: bool = True) -> list[str]:
    """Collect addresses from every task that can report them.

    Args:
        ctx: Run context holding the task set.
        api_server_only: Only consider tasks fronting the API server.

    Returns:
        Unique addresses in task name order.
    """
    addresses: list[str] = []
    for name in sorted(ctx.tasks):
        task = ctx.tasks[name]
        if not isinstance(task, HasAddress):
            continue
        if api_server_only and not task.is_for_api_server():
            continue
        for address in task.find_addresses(ctx):
            if address not in addresses:
                addresses.append(address)
    return addresses
