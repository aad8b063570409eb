"""Task manifest loading with validation.

A manifest is a YAML file describing the cluster and its task set:

```yaml
cluster:
  name: demo
  provider: azure
  location: westeurope
  subscriptionId: 00000000-0000-0000-0000-000000000000
lifecycleOverrides:
  - kinds: ["ResourceGroup"]
    lifecycle: exists_and_validates
    reason: "Resource group is owned by the platform team"
tasks:
  - kind: ResourceGroup
    name: demo-rg
    location: westeurope
```

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import (
    MAX_MANIFEST_FILE_SIZE_BYTES,
    MAX_TASKS_PER_RUN,
    CloudProvider,
    ClusterConfig,
    ConfigurationError,
)
from .errors import ConvergeError
from .lifecycle import LifecycleOverride
from .task import Task

logger = logging.getLogger(__name__)


class ManifestError(ConvergeError):
    """Raised when manifest loading or validation fails."""

    pass


class ClusterSection(BaseModel):
    """The ``cluster`` section of a manifest."""

    model_config = {"extra": "ignore"}

    name: str
    provider: CloudProvider = CloudProvider.AZURE
    location: str = ""
    subscription_id: str | None = Field(None, alias="subscriptionId")
    managed_identity_client_id: str | None = Field(None, alias="managedIdentityClientId")
    tags: dict[str, str] = Field(default_factory=dict)

    def to_config(self) -> ClusterConfig:
        return ClusterConfig(
            name=self.name,
            provider=self.provider,
            location=self.location,
            subscription_id=self.subscription_id,
            managed_identity_client_id=self.managed_identity_client_id,
            tags=dict(self.tags),
        )


@dataclass
class Manifest:
    """A loaded and validated manifest."""

    cluster: ClusterConfig
    tasks: dict[str, Task] = field(default_factory=dict)
    lifecycle_overrides: list[LifecycleOverride] = field(default_factory=list)
    source: Path | None = None


def _format_validation_error(prefix: str, error: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    errors = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        errors.append(f"  - {prefix}{'.' + loc if loc else ''}: {detail['msg']}")
    return "\n".join(errors)


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e


def parse_tasks(raw_tasks: Any, task_types: dict[str, type[Task]]) -> dict[str, Task]:
    """Validate raw task entries against their kinds.

    Args:
        raw_tasks: List of mappings, each with a ``kind`` key.
        task_types: Known kinds.

    Returns:
        Tasks keyed by name.

    Raises:
        ManifestError: On unknown kinds, duplicate names or invalid fields.
            Every problem is reported, not only the first.
    """
    if raw_tasks is None:
        return {}
    if not isinstance(raw_tasks, list):
        raise ManifestError("tasks must be a list")
    if len(raw_tasks) > MAX_TASKS_PER_RUN:
        raise ManifestError(f"Too many tasks: {len(raw_tasks)} (max {MAX_TASKS_PER_RUN})")

    tasks: dict[str, Task] = {}
    errors: list[str] = []

    for index, entry in enumerate(raw_tasks):
        prefix = f"tasks[{index}]"
        if not isinstance(entry, dict):
            errors.append(f"  - {prefix}: must be a mapping")
            continue

        data = dict(entry)
        kind = data.pop("kind", None)
        task_type = task_types.get(kind) if isinstance(kind, str) else None
        if task_type is None:
            errors.append(f"  - {prefix}.kind: unknown task kind {kind!r}, expected one of {sorted(task_types)}")
            continue

        try:
            task = task_type.model_validate(data)
        except ValidationError as e:
            errors.append(_format_validation_error(prefix, e))
            continue

        if task.name in tasks:
            errors.append(f"  - {prefix}.name: duplicate task name {task.name!r}")
            continue
        tasks[task.name] = task

    if errors:
        raise ManifestError("Task validation failed:\n" + "\n".join(errors))
    return tasks


def load_manifest(path: str | Path, task_types: dict[str, type[Task]]) -> Manifest:
    """Load and validate a manifest from YAML.

    Args:
        path: Manifest file.
        task_types: Known task kinds, keyed by kind name.

    Returns:
        Validated manifest.

    Raises:
        ManifestError: If the manifest cannot be loaded or fails validation.
    """
    path = Path(path)
    raw_data = _read_yaml(path)

    if not isinstance(raw_data, dict):
        raise ManifestError(f"Manifest file must contain a YAML mapping: {path}")

    try:
        cluster = ClusterSection.model_validate(raw_data.get("cluster") or {}).to_config()
    except ValidationError as e:
        raise ManifestError(
            f"Validation failed for {path}:\n{_format_validation_error('cluster', e)}"
        ) from e
    except ConfigurationError as e:
        raise ManifestError(str(e)) from e

    raw_overrides = raw_data.get("lifecycleOverrides") or []
    if not isinstance(raw_overrides, list):
        raise ManifestError("lifecycleOverrides must be a list")
    overrides: list[LifecycleOverride] = []
    for index, item in enumerate(raw_overrides):
        try:
            overrides.append(LifecycleOverride.model_validate(item))
        except ValidationError as e:
            raise ManifestError(
                f"Validation failed for {path}:\n"
                f"{_format_validation_error(f'lifecycleOverrides[{index}]', e)}"
            ) from e

    tasks = parse_tasks(raw_data.get("tasks"), task_types)

    logger.info(
        "Loaded manifest",
        extra={"path": str(path), "cluster": cluster.name, "tasks": len(tasks)},
    )
    return Manifest(cluster=cluster, tasks=tasks, lifecycle_overrides=overrides, source=path)
