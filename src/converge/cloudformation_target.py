"""CloudFormation document target.

Resources are accumulated under ``Resources[logicalName]``. References
between tasks use intrinsic functions:

    target.ref("main-vpc")                 # {"Ref": "AWSEC2VPCmainvpc"}
    target.get_att("main-vpc", "CidrBlock") # {"Fn::GetAtt": [..., "CidrBlock"]}
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import yaml

from .target import Target, TargetKind

if TYPE_CHECKING:
    from .report import RunReport

logger = logging.getLogger(__name__)

CLOUDFORMATION_TEMPLATE_VERSION = "2010-09-09"
CLOUDFORMATION_JSON_FILE = "kubernetes.json"
CLOUDFORMATION_YAML_FILE = "kubernetes.yaml"


def logical_name(cf_type: str, name: str) -> str:
    """Logical resource ID: alphanumerics of the type followed by the name."""
    return re.sub(r"[^A-Za-z0-9]", "", cf_type) + re.sub(r"[^A-Za-z0-9]", "", name)


class CloudFormationTarget(Target):
    """Accumulates a CloudFormation template."""

    kind: ClassVar[TargetKind] = TargetKind.CLOUDFORMATION
    observes: ClassVar[bool] = False

    def __init__(self, out_dir: str | Path, output_format: str = "json") -> None:
        super().__init__()
        if output_format not in ("json", "yaml"):
            raise ValueError(f"Unsupported CloudFormation output format: {output_format}")
        self.out_dir = Path(out_dir)
        self.output_format = output_format
        self.written_path: Path | None = None
        self._resources: dict[str, dict[str, Any]] = {}
        self._outputs: dict[str, dict[str, Any]] = {}
        self._logical_names: dict[str, str] = {}

    def render_resource(
        self,
        cf_type: str,
        name: str,
        properties: dict[str, Any],
        task_name: str | None = None,
        depends_on: list[str] | None = None,
    ) -> str:
        """Add a resource to the template.

        Args:
            cf_type: Resource type, e.g. "AWS::EC2::VPC".
            name: Name used to build the logical ID.
            properties: Resource properties. None values are dropped.
            task_name: Task the resource belongs to, for ref/get_att.
            depends_on: Task names that must be created first.

        Returns:
            The logical ID.

        Raises:
            ValueError: If the logical ID is already taken.
        """
        logical = logical_name(cf_type, name)
        resource: dict[str, Any] = {
            "Type": cf_type,
            "Properties": {k: v for k, v in properties.items() if v is not None},
        }
        if depends_on:
            resource["DependsOn"] = sorted(self._logical(d) for d in depends_on)
        with self._lock:
            if logical in self._resources:
                raise ValueError(f"CloudFormation resource {logical} rendered twice")
            self._resources[logical] = resource
            self._logical_names[task_name or name] = logical
        return logical

    def _logical(self, task_name: str) -> str:
        with self._lock:
            logical = self._logical_names.get(task_name)
        if logical is None:
            raise ValueError(f"Task '{task_name}' has not been rendered to the CloudFormation template")
        return logical

    def ref(self, task_name: str) -> dict[str, str]:
        return {"Ref": self._logical(task_name)}

    def get_att(self, task_name: str, attr: str) -> dict[str, list[str]]:
        return {"Fn::GetAtt": [self._logical(task_name), attr]}

    def add_output(self, name: str, value: Any) -> None:
        with self._lock:
            self._outputs[re.sub(r"[^A-Za-z0-9]", "", name)] = {"Value": value}

    def resource(self, logical: str) -> dict[str, Any] | None:
        with self._lock:
            return self._resources.get(logical)

    def template(self) -> dict[str, Any]:
        with self._lock:
            template: dict[str, Any] = {
                "AWSTemplateFormatVersion": CLOUDFORMATION_TEMPLATE_VERSION,
                "Resources": dict(sorted(self._resources.items())),
            }
            if self._outputs:
                template["Outputs"] = dict(sorted(self._outputs.items()))
        return template

    def finish(self, report: RunReport) -> None:
        if not report.success:
            logger.error(
                "Run failed, CloudFormation template not written",
                extra={"out_dir": str(self.out_dir)},
            )
            return

        self.out_dir.mkdir(parents=True, exist_ok=True)
        if self.output_format == "yaml":
            path = self.out_dir / CLOUDFORMATION_YAML_FILE
            content = yaml.safe_dump(self.template(), sort_keys=True, default_flow_style=False)
        else:
            path = self.out_dir / CLOUDFORMATION_JSON_FILE
            content = json.dumps(self.template(), indent=2, sort_keys=True) + "\n"
        path.write_text(content, encoding="utf-8")
        self.written_path = path
        logger.info("CloudFormation template written", extra={"path": str(path)})
