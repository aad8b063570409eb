"""Terraform document target.

Renderers add resource blocks instead of calling the cloud. References
between tasks become Terraform interpolations built with ``link``:

    target.render_resource("azurerm_resource_group", "main", {...}, task_name="main")
    target.link("main")  # "${azurerm_resource_group.main.id}"

The document is written as JSON (``kubernetes.tf.json``) when the run
finishes, and only if every task succeeded.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from .target import Target, TargetKind

if TYPE_CHECKING:
    from .report import RunReport

logger = logging.getLogger(__name__)

TERRAFORM_FILE_NAME = "kubernetes.tf.json"


def sanitize_name(name: str) -> str:
    """Turn a task name into a valid Terraform identifier."""
    sanitized = re.sub(r"[^A-Za-z0-9_-]", "-", name)
    if not sanitized or not (sanitized[0].isalpha() or sanitized[0] == "_"):
        sanitized = "_" + sanitized
    return sanitized


class TerraformTarget(Target):
    """Accumulates Terraform resources keyed by (type, name)."""

    kind: ClassVar[TargetKind] = TargetKind.TERRAFORM
    observes: ClassVar[bool] = False

    def __init__(
        self,
        out_dir: str | Path,
        providers: dict[str, dict[str, Any]] | None = None,
        required_providers: dict[str, dict[str, str]] | None = None,
    ) -> None:
        super().__init__()
        self.out_dir = Path(out_dir)
        self.providers = dict(providers or {})
        self.required_providers = dict(required_providers or {})
        self.written_path: Path | None = None
        self._resources: dict[tuple[str, str], dict[str, Any]] = {}
        self._outputs: dict[str, dict[str, Any]] = {}
        # task name -> (resource type, resource name)
        self._addresses: dict[str, tuple[str, str]] = {}

    def render_resource(
        self,
        resource_type: str,
        name: str,
        body: dict[str, Any],
        task_name: str | None = None,
    ) -> str:
        """Add a resource block.

        Args:
            resource_type: Terraform resource type, e.g. "azurerm_resource_group".
            name: Resource name; sanitized into a Terraform identifier.
            body: Resource arguments. None values are dropped.
            task_name: Task the block belongs to, so dependents can link to it.

        Returns:
            The resource address "type.name".

        Raises:
            ValueError: If the same (type, name) is rendered twice.
        """
        tf_name = sanitize_name(name)
        key = (resource_type, tf_name)
        cleaned = {k: v for k, v in body.items() if v is not None}
        with self._lock:
            if key in self._resources:
                raise ValueError(f"Terraform resource {resource_type}.{tf_name} rendered twice")
            self._resources[key] = cleaned
            if task_name is not None:
                self._addresses[task_name] = key

        logger.debug("Rendered Terraform resource", extra={"resource": f"{resource_type}.{tf_name}"})
        return f"{resource_type}.{tf_name}"

    def link(self, task_name: str, attr: str = "id") -> str:
        """Interpolation referring to an attribute of an already rendered task.

        Raises:
            ValueError: If the task has not been rendered to this document.
        """
        with self._lock:
            address = self._addresses.get(task_name)
        if address is None:
            raise ValueError(f"Task '{task_name}' has not been rendered to the Terraform document")
        resource_type, tf_name = address
        return "${" + f"{resource_type}.{tf_name}.{attr}" + "}"

    def add_output(self, name: str, value: Any) -> None:
        with self._lock:
            self._outputs[sanitize_name(name)] = {"value": value}

    def resource(self, resource_type: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            return self._resources.get((resource_type, sanitize_name(name)))

    def document(self) -> dict[str, Any]:
        """The Terraform JSON document as it would be written."""
        with self._lock:
            resources: dict[str, dict[str, Any]] = {}
            for (resource_type, tf_name), body in sorted(self._resources.items()):
                resources.setdefault(resource_type, {})[tf_name] = body
            outputs = dict(sorted(self._outputs.items()))

        doc: dict[str, Any] = {}
        if self.required_providers:
            doc["terraform"] = {"required_providers": self.required_providers}
        if self.providers:
            doc["provider"] = self.providers
        if resources:
            doc["resource"] = resources
        if outputs:
            doc["output"] = outputs
        return doc

    def finish(self, report: RunReport) -> None:
        if not report.success:
            logger.error("Run failed, Terraform document not written", extra={"out_dir": str(self.out_dir)})
            return

        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = self.out_dir / TERRAFORM_FILE_NAME
        path.write_text(json.dumps(self.document(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        self.written_path = path
        logger.info("Terraform document written", extra={"path": str(path)})
