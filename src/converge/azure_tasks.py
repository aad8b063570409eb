"""Azure task kinds: resource groups and generic ARM resources.

ArmResource covers any resource type reachable through the generic
resources API, addressed by type, API version, resource group and an
optional parent for child types:

    tasks:
      - kind: ResourceGroup
        name: cluster-rg
        location: westeurope
      - kind: ArmResource
        name: cluster-vnet
        resourceType: Microsoft.Network/virtualNetworks
        apiVersion: "2023-09-01"
        resourceGroup: cluster-rg
        location: westeurope
        properties:
          addressSpace:
            addressPrefixes: ["10.0.0.0/16"]
      - kind: ArmResource
        name: nodes
        resourceType: Microsoft.Network/virtualNetworks/subnets
        apiVersion: "2023-09-01"
        resourceGroup: cluster-rg
        parent: cluster-vnet
        properties:
          addressPrefix: 10.0.1.0/24

Both kinds render to the live API and to Terraform (azurerm / azapi
providers). There is no CloudFormation rendering for Azure.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import Field, PrivateAttr, field_validator

from .errors import TaskValidationError
from .target import RenderRegistry, TargetKind
from .task import FieldKind, FieldSpec, Normalization, Task, TaskRef

if TYPE_CHECKING:
    from .changes import Changes
    from .context import RunContext

logger = logging.getLogger(__name__)

# Property paths checked, in order, for a resource's reachable address
DEFAULT_ADDRESS_PROPERTIES: tuple[str, ...] = ("dnsSettings.fqdn", "ipAddress")

TERRAFORM_REQUIRED_PROVIDERS: dict[str, dict[str, str]] = {
    "azurerm": {"source": "hashicorp/azurerm"},
    "azapi": {"source": "Azure/azapi"},
}


def terraform_providers(subscription_id: str | None) -> dict[str, dict[str, Any]]:
    azurerm: dict[str, Any] = {"features": {}}
    if subscription_id:
        azurerm["subscription_id"] = subscription_id
    return {"azurerm": azurerm, "azapi": {}}


def _managed_tags(observed: dict[str, str] | None, desired: dict[str, str] | None, ctx: RunContext) -> dict[str, str]:
    """Observed tags without the cluster tags this run adds implicitly."""
    implicit = set(ctx.cluster.common_tags()) - set(desired or {})
    return {k: v for k, v in (observed or {}).items() if k not in implicit}


def _merged_tags(ctx: RunContext, tags: dict[str, str] | None) -> dict[str, str]:
    merged = ctx.cluster.common_tags()
    merged.update(tags or {})
    return merged


def _project(observed: Any, desired: Any) -> Any:
    """Limit observed properties to the keys the desired state declares.

    ARM returns read-only and defaulted properties (provisioningState, etag,
    ...) that are not part of the managed state.
    """
    if isinstance(desired, dict) and isinstance(observed, dict):
        return {k: _project(observed[k], v) for k, v in desired.items() if k in observed}
    return observed


def _deep_merge(observed: Any, desired: Any) -> Any:
    """Desired values laid over observed ones, recursing into mappings."""
    if isinstance(observed, dict) and isinstance(desired, dict):
        merged = dict(observed)
        for key, value in desired.items():
            merged[key] = _deep_merge(observed.get(key), value)
        return merged
    return desired


def _lookup(data: dict[str, Any] | None, path: str) -> Any:
    current: Any = data or {}
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class ResourceGroup(Task):
    """An Azure resource group."""

    kind: ClassVar[str] = "ResourceGroup"
    diff_fields: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("location", required=True, immutable=True, normalize=Normalization.CASE_INSENSITIVE),
        FieldSpec("tags", FieldKind.VALUE, normalize=Normalization.EMPTY_AS_NONE),
    )

    # Azure name; defaults to the task name
    azure_name: str | None = Field(None, alias="azureName")
    location: str | None = None
    tags: dict[str, str] | None = None

    @property
    def resource_name(self) -> str:
        return self.azure_name or self.name

    def find(self, ctx: RunContext) -> ResourceGroup | None:
        group = ctx.cloud.get_resource_group(self.resource_name)
        if group is None:
            return None

        ctx.ids.set(self.name, group.id)
        return ResourceGroup(
            name=self.name,
            azure_name=self.azure_name,
            lifecycle=self.lifecycle,
            location=group.location,
            tags=_managed_tags(group.tags, self.tags, ctx),
        )

    def compare_with_id(self, ctx: RunContext) -> str | None:
        return ctx.ids.get(self.name)


class ArmResource(Task):
    """Any Azure resource managed through the generic resources API."""

    kind: ClassVar[str] = "ArmResource"
    diff_fields: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("resource_type", required=True, immutable=True, normalize=Normalization.CASE_INSENSITIVE),
        FieldSpec("resource_group", FieldKind.REFERENCE, required=True, immutable=True),
        FieldSpec("parent", FieldKind.REFERENCE, immutable=True),
        FieldSpec("location", immutable=True, normalize=Normalization.CASE_INSENSITIVE),
        FieldSpec("properties", FieldKind.VALUE),
        FieldSpec("tags", FieldKind.VALUE, normalize=Normalization.EMPTY_AS_NONE),
    )

    azure_name: str | None = Field(None, alias="azureName")
    resource_type: str | None = Field(None, alias="resourceType")
    api_version: str = Field(alias="apiVersion", min_length=1)
    resource_group: TaskRef | None = Field(None, alias="resourceGroup")
    parent: TaskRef | None = None
    location: str | None = None
    properties: dict[str, Any] | None = None
    tags: dict[str, str] | None = None

    # Address discovery
    for_api_server: bool = Field(False, alias="forApiServer")
    address_properties: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ADDRESS_PROPERTIES), alias="addressProperties"
    )

    # Full observed state, set by find. Updates are full PUTs, so fields the
    # task leaves unmanaged are sent back as observed.
    _observed_properties: dict[str, Any] = PrivateAttr(default_factory=dict)
    _observed_tags: dict[str, str] = PrivateAttr(default_factory=dict)

    @field_validator("resource_type")
    @classmethod
    def validate_resource_type(cls, v: str | None) -> str | None:
        if v is not None and v.count("/") < 1:
            raise ValueError("resourceType must look like Namespace/type")
        return v

    @property
    def resource_name(self) -> str:
        return self.azure_name or self.name

    @property
    def is_child(self) -> bool:
        return self.parent is not None

    def resource_id(self, ctx: RunContext) -> str:
        """Full ARM ID, derived from the resource group and parent tasks."""
        if self.parent is not None:
            parent = ctx.task(self.parent)
            if not isinstance(parent, ArmResource):
                raise TaskValidationError("parent", f"parent of {self.name} must be an ArmResource")
            return ctx.cloud.resource_id(
                parent.resource_id(ctx), self.resource_type or "", self.resource_name, child=True
            )

        group = ctx.task(self.resource_group) if self.resource_group else None
        if not isinstance(group, ResourceGroup):
            raise TaskValidationError("resource_group", f"resourceGroup of {self.name} must be a ResourceGroup")
        return ctx.cloud.resource_id(
            ctx.cloud.resource_group_id(group.resource_name), self.resource_type or "", self.resource_name
        )

    def find(self, ctx: RunContext) -> ArmResource | None:
        resource = ctx.cloud.get_resource(self.resource_id(ctx), self.api_version)
        if resource is None:
            return None

        ctx.ids.set(self.name, resource.id)
        found = ArmResource(
            name=self.name,
            azure_name=self.azure_name,
            lifecycle=self.lifecycle,
            resource_type=self.resource_type,
            api_version=self.api_version,
            # The ID is derived from these references, so they cannot differ
            resource_group=self.resource_group,
            parent=self.parent,
            location=resource.location,
            properties=_project(resource.properties or {}, self.properties),
            tags=_managed_tags(resource.tags, self.tags, ctx),
            for_api_server=self.for_api_server,
        )
        found._observed_properties = dict(resource.properties or {})
        found._observed_tags = dict(resource.tags or {})
        return found

    def check_changes(self, actual: Task | None, changes: Changes) -> None:
        super().check_changes(actual, changes)
        if actual is None and self.resource_type:
            child_type = self.resource_type.count("/") > 1
            if child_type and self.parent is None:
                raise TaskValidationError(
                    "parent", f"Field is required for child type {self.resource_type}: parent"
                )
            if not child_type and self.parent is not None:
                raise TaskValidationError(
                    "parent", f"{self.resource_type} is not a child type but parent is set"
                )

    def compare_with_id(self, ctx: RunContext) -> str | None:
        return ctx.ids.get(self.name)

    def find_addresses(self, ctx: RunContext) -> list[str]:
        if ctx.cloud is None:
            return []
        resource = ctx.cloud.get_resource(self.resource_id(ctx), self.api_version)
        if resource is None:
            return []
        addresses = []
        for path in self.address_properties:
            value = _lookup(resource.properties, path)
            if isinstance(value, str) and value:
                addresses.append(value)
        return addresses

    def is_for_api_server(self) -> bool:
        return self.for_api_server


# =============================================================================
# Renderers
# =============================================================================


def render_resource_group_api(
    ctx: RunContext, actual: ResourceGroup | None, expected: ResourceGroup, changes: Changes
) -> None:
    cloud = ctx.target.cloud
    location = expected.location if actual is None else actual.location
    group = cloud.create_or_update_resource_group(
        expected.resource_name, location, _merged_tags(ctx, expected.tags)
    )
    ctx.ids.set(expected.name, group.id)


def render_arm_resource_api(
    ctx: RunContext, actual: ArmResource | None, expected: ArmResource, changes: Changes
) -> None:
    cloud = ctx.target.cloud
    location = expected.location
    properties = expected.properties or {}
    tags = _merged_tags(ctx, expected.tags)
    if actual is not None:
        location = expected.location or actual.location
        properties = _deep_merge(actual._observed_properties, properties)
        if expected.tags is None:
            tags = {**actual._observed_tags, **ctx.cluster.common_tags()}

    resource = cloud.create_or_update_resource(
        expected.resource_id(ctx),
        expected.api_version,
        location=location if not expected.is_child else None,
        properties=properties,
        tags=tags if not expected.is_child else None,
    )
    ctx.ids.set(expected.name, resource.id)


def render_resource_group_terraform(
    ctx: RunContext, actual: ResourceGroup | None, expected: ResourceGroup, changes: Changes
) -> None:
    ctx.target.render_resource(
        "azurerm_resource_group",
        expected.name,
        {
            "name": expected.resource_name,
            "location": expected.location,
            "tags": _merged_tags(ctx, expected.tags),
        },
        task_name=expected.name,
    )


def render_arm_resource_terraform(
    ctx: RunContext, actual: ArmResource | None, expected: ArmResource, changes: Changes
) -> None:
    target = ctx.target
    parent = expected.parent or expected.resource_group
    body: dict[str, Any] = {
        "type": f"{expected.resource_type}@{expected.api_version}",
        "name": expected.resource_name,
        "parent_id": target.link(parent.name, "id") if parent and parent.name else None,
        "body": {"properties": expected.properties or {}},
    }
    if not expected.is_child:
        body["location"] = expected.location
        body["tags"] = _merged_tags(ctx, expected.tags)

    target.render_resource("azapi_resource", expected.name, body, task_name=expected.name)


def register_azure_renderers(registry: RenderRegistry) -> RenderRegistry:
    """Register API and Terraform renderers for the Azure task kinds."""
    registry.register(ResourceGroup.kind, TargetKind.API, render_resource_group_api)
    registry.register(ResourceGroup.kind, TargetKind.TERRAFORM, render_resource_group_terraform)
    registry.register(ArmResource.kind, TargetKind.API, render_arm_resource_api)
    registry.register(ArmResource.kind, TargetKind.TERRAFORM, render_arm_resource_terraform)
    return registry


AZURE_TASK_TYPES: dict[str, type[Task]] = {
    ResourceGroup.kind: ResourceGroup,
    ArmResource.kind: ArmResource,
}
