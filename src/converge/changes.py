"""Sparse deltas between observed and desired task state.

Changes holds only the fields that differ. Every other declared field reads
as UNCHANGED, which is distinct from None (unmanaged) and from zero values.

Comparison is driven by each kind's FieldSpec list:

- SCALAR: equality after optional normalization
- VALUE: deep equality, pydantic models compared by their dumped value
- SET: order-insensitive, both sides sorted before comparing
- REFERENCE / REFERENCE_SET: same referenced task, by provider ID when both
  sides can be resolved to one, otherwise by name
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from typing import Any, NamedTuple

from pydantic import BaseModel

from .task import FieldKind, FieldSpec, Normalization, Task, TaskRef

logger = logging.getLogger(__name__)

# Maps a task name to the provider ID it is known by, or None
ReferenceResolver = Callable[[str], str | None]


class _Unchanged:
    """Sentinel type for fields absent from a Changes object."""

    _instance: _Unchanged | None = None

    def __new__(cls) -> _Unchanged:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Unchanged:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unchanged:
        return self


UNCHANGED = _Unchanged()


class FieldChange(NamedTuple):
    """One line of a plan: a field moving from old to new."""

    field: str
    old: Any
    new: Any


class Changes:
    """Per-pass delta for a single task, shaped like the task.

    Declared fields are readable as attributes and return UNCHANGED unless
    they are part of the delta.
    """

    def __init__(self, task_type: type[Task], values: dict[str, Any] | None = None) -> None:
        self.kind = task_type.kind
        self._specs = {spec.name: spec for spec in task_type.diff_fields}
        self._values: dict[str, Any] = {}
        for name, value in (values or {}).items():
            if name not in self._specs:
                raise KeyError(f"{name} is not a declared field of {self.kind}")
            self._values[name] = value

    def __getattr__(self, name: str) -> Any:
        specs = self.__dict__.get("_specs", {})
        if name in specs:
            return self._values.get(name, UNCHANGED)
        raise AttributeError(name)

    def get(self, name: str) -> Any:
        if name not in self._specs:
            raise KeyError(f"{name} is not a declared field of {self.kind}")
        return self._values.get(name, UNCHANGED)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        # Declaration order keeps reports stable
        return (name for name in self._specs if name in self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Changes({self.kind}, {sorted(self._values)})"

    def is_empty(self) -> bool:
        return not self._values

    def as_dict(self) -> dict[str, Any]:
        return {name: self._values[name] for name in self}

    def field_changes(self, actual: Task | None) -> list[FieldChange]:
        """Changed fields as (field, old, new) with display-ready values.

        Args:
            actual: Observed task, or None when the resource is being created.
        """
        result: list[FieldChange] = []
        for name in self:
            old = getattr(actual, name) if actual is not None else None
            result.append(FieldChange(name, display_value(old), display_value(self._values[name])))
        return result


def display_value(value: Any) -> Any:
    """Convert a field value into plain data for reports and documents."""
    if isinstance(value, TaskRef):
        return str(value)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, dict):
        return {k: display_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [display_value(v) for v in value]
    return value


def _normalize(value: Any, normalization: Normalization | None) -> Any:
    match normalization:
        case Normalization.EMPTY_AS_NONE:
            if value in ("", [], {}, ()):
                return None
            return value
        case Normalization.CASE_INSENSITIVE:
            return value.lower() if isinstance(value, str) else value
        case Normalization.WHITESPACE:
            if isinstance(value, str):
                lines = value.replace("\r\n", "\n").split("\n")
                return "\n".join(" ".join(line.split()) for line in lines).strip()
            return value
        case _:
            return value


def _default_sort_key(value: Any) -> str:
    return json.dumps(display_value(value), sort_keys=True, default=str)


def _sorted(spec: FieldSpec, values: Any) -> list[Any]:
    if values is None:
        return []
    return sorted(values, key=spec.sort_key or _default_sort_key)


def _reference_id(ref: TaskRef, resolver: ReferenceResolver | None) -> str | None:
    if ref.id:
        return ref.id
    if resolver is not None and ref.name:
        return resolver(ref.name)
    return None


def same_reference(a: TaskRef | None, b: TaskRef | None, resolver: ReferenceResolver | None = None) -> bool:
    """Check whether two references point at the same task."""
    if a is None or b is None:
        return a is b
    a_id = _reference_id(a, resolver)
    b_id = _reference_id(b, resolver)
    if a_id and b_id:
        return a_id == b_id
    return a.name is not None and a.name == b.name


def _same_reference_set(
    a: list[TaskRef] | None, b: list[TaskRef] | None, resolver: ReferenceResolver | None
) -> bool:
    a = list(a or [])
    b = list(b or [])
    if len(a) != len(b):
        return False
    a_ids = [_reference_id(ref, resolver) for ref in a]
    b_ids = [_reference_id(ref, resolver) for ref in b]
    if all(a_ids) and all(b_ids):
        return sorted(a_ids) == sorted(b_ids)  # type: ignore[type-var]
    a_names = [ref.name for ref in a]
    b_names = [ref.name for ref in b]
    if not all(a_names) or not all(b_names):
        return False
    return sorted(a_names) == sorted(b_names)  # type: ignore[type-var]


def fields_equal(
    spec: FieldSpec, observed: Any, desired: Any, resolver: ReferenceResolver | None = None
) -> bool:
    """Compare one field according to its FieldSpec."""
    match spec.kind:
        case FieldKind.REFERENCE:
            return same_reference(observed, desired, resolver)
        case FieldKind.REFERENCE_SET:
            return _same_reference_set(observed, desired, resolver)
        case FieldKind.SET:
            observed_items = _sorted(spec, [_normalize(v, spec.normalize) for v in observed or []])
            desired_items = _sorted(spec, [_normalize(v, spec.normalize) for v in desired or []])
            return display_value(observed_items) == display_value(desired_items)
        case FieldKind.VALUE:
            return display_value(_normalize(observed, spec.normalize)) == display_value(
                _normalize(desired, spec.normalize)
            )
        case _:
            return _normalize(observed, spec.normalize) == _normalize(desired, spec.normalize)


def build_changes(
    actual: Task | None,
    expected: Task,
    resolver: ReferenceResolver | None = None,
) -> Changes:
    """Compute the delta that would bring actual to expected.

    Args:
        actual: Observed task, or None if the resource does not exist.
        expected: Desired task.
        resolver: Optional name to provider ID lookup for references.

    Returns:
        Changes holding every managed field that differs. When actual is None
        every managed field is part of the delta.
    """
    if actual is not None and type(actual) is not type(expected):
        raise TypeError(
            f"Cannot diff {type(actual).__name__} against {type(expected).__name__}"
        )

    values: dict[str, Any] = {}
    for spec in expected.diff_fields:
        desired = getattr(expected, spec.name)
        if desired is None:
            # Unset means unmanaged
            continue
        if actual is None:
            values[spec.name] = desired
            continue
        observed = getattr(actual, spec.name)
        if not fields_equal(spec, observed, desired, resolver):
            values[spec.name] = desired

    changes = Changes(type(expected), values)
    if not changes.is_empty():
        logger.debug(
            "Computed changes",
            extra={"task": expected.name, "kind": expected.kind, "fields": list(changes)},
        )
    return changes
