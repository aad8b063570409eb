"""Task lifecycle policies and per-kind overrides.

A lifecycle controls what the engine does when observed and desired state
diverge for one task:

- SYNC: converge the resource to its declared state.
- IGNORE: never observe nor render the task; it counts as satisfied.
- EXISTS_AND_VALIDATES: the resource must exist and match, otherwise fail.
- EXISTS_AND_WARN_IF_CHANGES: the resource must exist; divergence is only
  logged.
- WARN_IF_INSUFFICIENT_ACCESS: converge, but a permission refusal from the
  cloud is downgraded to a warning.

Overrides let an operator change the lifecycle of whole task kinds (or
specific task names) without editing the task set, e.g. to adopt networking
that another team owns:

    lifecycleOverrides:
      - kinds: ["Network", "Subnet"]
        lifecycle: exists_and_validates
        reason: "Shared VPC managed elsewhere"
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class Lifecycle(str, Enum):
    """Convergence policy of a single task."""

    SYNC = "sync"
    IGNORE = "ignore"
    EXISTS_AND_VALIDATES = "exists_and_validates"
    EXISTS_AND_WARN_IF_CHANGES = "exists_and_warn_if_changes"
    WARN_IF_INSUFFICIENT_ACCESS = "warn_if_insufficient_access"

    @property
    def observes_only(self) -> bool:
        """True when the engine must never render this task."""
        return self in (
            Lifecycle.IGNORE,
            Lifecycle.EXISTS_AND_VALIDATES,
            Lifecycle.EXISTS_AND_WARN_IF_CHANGES,
        )


@dataclass(frozen=True)
class LifecycleResolution:
    """Result of resolving the effective lifecycle for a task.

    Attributes:
        lifecycle: The lifecycle to use for this task.
        rule_matched: Which override matched (None if the task's own value is used).
        reason: Human-readable explanation of why this lifecycle was chosen.
    """

    lifecycle: Lifecycle
    rule_matched: str | None
    reason: str


class LifecycleOverride(BaseModel):
    """A single lifecycle override rule.

    At least one of kinds or names must be given. Patterns are globs
    (* and ?) matched case-insensitively.
    """

    model_config = {"extra": "ignore"}

    kinds: list[str] = Field(default_factory=list)
    names: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle
    reason: str = ""

    @field_validator("kinds", "names")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop blank patterns."""
        return [pattern.strip() for pattern in v if pattern and pattern.strip()]

    def matches(self, kind: str, name: str) -> bool:
        """Check if this override applies to a task.

        Args:
            kind: Task kind (e.g. "Subnet").
            name: Task name.

        Returns:
            True if every given criterion matches.
        """
        if not self.kinds and not self.names:
            return False

        if self.kinds and not _matches_any_pattern(kind, self.kinds):
            return False

        if self.names and not _matches_any_pattern(name, self.names):
            return False

        return True

    def describe(self) -> str:
        """Short identifier used in logs and resolutions."""
        parts = []
        if self.kinds:
            parts.append(f"kinds={self.kinds}")
        if self.names:
            parts.append(f"names={self.names}")
        return "override:" + ",".join(parts)


def _glob_to_regex(pattern: str) -> str:
    """Convert glob pattern to regex.

    * -> .*
    ? -> .
    Other regex chars are escaped
    """
    escaped = ""
    for char in pattern:
        if char == "*":
            escaped += ".*"
        elif char == "?":
            escaped += "."
        else:
            escaped += re.escape(char)
    return f"^{escaped}$"


def _matches_any_pattern(value: str, patterns: list[str]) -> bool:
    value_lower = value.lower()
    return any(re.match(_glob_to_regex(p.lower()), value_lower) for p in patterns)


@dataclass
class LifecycleResolver:
    """Resolves the effective lifecycle for each task.

    Evaluation order:
    1. The task's declared lifecycle
    2. The first override matching the task's kind/name replaces it

    Thread Safety:
        This class is not mutated after construction and is safe to share
        between workers.
    """

    overrides: list[LifecycleOverride] = field(default_factory=list)

    def resolve(self, kind: str, name: str, declared: Lifecycle) -> LifecycleResolution:
        """Resolve the effective lifecycle for a task.

        Args:
            kind: Task kind.
            name: Task name.
            declared: Lifecycle declared on the task itself.

        Returns:
            LifecycleResolution with the effective lifecycle and reasoning.
        """
        for override in self.overrides:
            if override.matches(kind, name):
                if override.lifecycle != declared:
                    logger.debug(
                        "Lifecycle overridden",
                        extra={
                            "task": name,
                            "kind": kind,
                            "declared": declared.value,
                            "effective": override.lifecycle.value,
                        },
                    )
                return LifecycleResolution(
                    lifecycle=override.lifecycle,
                    rule_matched=override.describe(),
                    reason=override.reason or f"Override: {override.lifecycle.value}",
                )

        return LifecycleResolution(
            lifecycle=declared,
            rule_matched=None,
            reason=f"Declared lifecycle: {declared.value}",
        )


def parse_lifecycle_overrides(values: list[str]) -> list[LifecycleOverride]:
    """Parse overrides given as KIND=lifecycle strings.

    Example: ["Subnet=exists_and_validates", "Network=ignore"]

    Raises:
        ValueError: If an entry is malformed or names an unknown lifecycle.
    """
    overrides: list[LifecycleOverride] = []
    for value in values:
        kind, sep, lifecycle = value.partition("=")
        if not sep or not kind.strip() or not lifecycle.strip():
            raise ValueError(f"Lifecycle override must look like KIND=lifecycle: {value!r}")
        try:
            parsed = Lifecycle(lifecycle.strip().lower())
        except ValueError as e:
            valid = [lc.value for lc in Lifecycle]
            raise ValueError(f"Unknown lifecycle {lifecycle!r}, expected one of {valid}") from e
        overrides.append(LifecycleOverride(kinds=[kind.strip()], lifecycle=parsed))
    return overrides


def create_lifecycle_resolver_from_env(
    extra: list[LifecycleOverride] | None = None,
) -> LifecycleResolver:
    """Create a LifecycleResolver from environment configuration.

    Environment Variables:
        LIFECYCLE_OVERRIDES: JSON list of override objects, or a comma
            separated list of KIND=lifecycle entries (optional)

    Args:
        extra: Overrides from the manifest or CLI; they take precedence over
            the environment.

    Returns:
        Configured LifecycleResolver.
    """
    overrides: list[LifecycleOverride] = list(extra or [])

    raw = os.environ.get("LIFECYCLE_OVERRIDES", "").strip()
    if raw:
        try:
            if raw.startswith("["):
                data = json.loads(raw)
                overrides.extend(LifecycleOverride.model_validate(item) for item in data)
            else:
                overrides.extend(
                    parse_lifecycle_overrides([v for v in raw.split(",") if v.strip()])
                )
        except (ValueError, ValidationError) as e:
            # ValueError covers json.JSONDecodeError and malformed KIND=lifecycle entries
            logger.warning(f"Failed to parse LIFECYCLE_OVERRIDES: {e}")

    return LifecycleResolver(overrides=overrides)
