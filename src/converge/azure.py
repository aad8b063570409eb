"""Azure cloud handle over the Azure SDK for Python.

Wraps ResourceManagementClient with the calls Azure tasks need and
translates SDK exceptions into engine signals:

- ResourceNotFoundError -> the object is absent (get returns None)
- throttling, conflicts and eventual-consistency codes -> TryAgainLaterError
- authorization failures -> InsufficientAccessError

SECURITY: Timeouts are enforced on every long-running operation to prevent
indefinite hangs. An operation still running when its timeout expires raises
TimeoutError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.polling import LROPoller
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .config import DEFAULT_CLOUD_OPERATION_TIMEOUT_SECONDS
from .errors import InsufficientAccessError, TryAgainLaterError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes worth retrying
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# ARM error codes meaning "not yet", usually replication lag after a create
RETRYABLE_ERROR_CODES: frozenset[str] = frozenset(
    {
        "AnotherOperationInProgress",
        "Conflict",
        "ParentResourceNotFound",
        "PrincipalNotFound",
        "ResourceGroupBeingDeleted",
        "RetryableError",
        "TooManyRequests",
    }
)

AUTHORIZATION_ERROR_CODES: frozenset[str] = frozenset(
    {
        "AuthorizationFailed",
        "LinkedAuthorizationFailed",
        "InsufficientPermissions",
    }
)


def get_credential(client_id: str | None = None) -> Any:
    """Get an Azure credential.

    Args:
        client_id: Client ID of a user-assigned managed identity. When given,
            ManagedIdentityCredential is used; otherwise the default
            credential chain (environment, workload identity, CLI, ...).

    Returns:
        A token credential usable by the management clients.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()


def _error_code(error: HttpResponseError) -> str:
    odata = getattr(error, "error", None)
    return getattr(odata, "code", None) or ""


def classify_azure_error(error: AzureError, operation: str) -> Exception:
    """Map an Azure SDK error to the engine's error families.

    Returns:
        TryAgainLaterError, InsufficientAccessError, or the original error
        when it is fatal.
    """
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TryAgainLaterError(f"{operation}: transient network error: {error}")

    if not isinstance(error, HttpResponseError):
        return error

    code = _error_code(error)
    status = error.status_code

    if code in AUTHORIZATION_ERROR_CODES or status == 403:
        return InsufficientAccessError(f"{operation}: {code or 'Forbidden'}: {error.message}")

    if code in RETRYABLE_ERROR_CODES or status in RETRYABLE_STATUS_CODES:
        return TryAgainLaterError(f"{operation}: {code or status}: {error.message}")

    return error


def parse_resource_type(resource_id: str | None) -> str:
    """Extract the resource type from an Azure resource ID.

    Azure resource IDs follow the pattern:
    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{child}/{name}]

    Returns:
        Resource type (e.g. "Microsoft.Network/virtualNetworks/subnets") or "unknown".
    """
    if not resource_id or "/providers/" not in resource_id:
        return "unknown"

    segments = resource_id.split("/providers/")[-1].split("/")
    if len(segments) < 3:
        return "unknown"

    # namespace, then alternating type/name pairs
    types = segments[1::2]
    return "/".join([segments[0], *types])


class AzureCloud:
    """Cloud handle for Azure Resource Manager.

    Thread Safety:
        The management client is safe to share between worker threads.
    """

    provider = "azure"

    def __init__(
        self,
        subscription_id: str,
        credential: Any | None = None,
        client: ResourceManagementClient | None = None,
        operation_timeout_seconds: int = DEFAULT_CLOUD_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the handle.

        Args:
            subscription_id: Subscription all resources live in.
            credential: Token credential; ignored when client is given.
            client: Pre-built client, mainly for tests.
            operation_timeout_seconds: Timeout for long-running operations.
        """
        self.subscription_id = subscription_id
        self._timeout = operation_timeout_seconds
        if client is None:
            client = ResourceManagementClient(
                credential=credential or get_credential(),
                subscription_id=subscription_id,
            )
        self._client = client

    def _call(self, operation: str, func: Callable[[], T], missing_ok: bool = False) -> T | None:
        try:
            return func()
        except AzureError as e:
            if missing_ok and isinstance(e, ResourceNotFoundError):
                return None
            classified = classify_azure_error(e, operation)
            extra = {"operation": operation, "error": str(e)}
            if isinstance(e, HttpResponseError):
                extra["status_code"] = e.status_code
            if classified is e:
                logger.error("Azure API error", extra=extra)
                raise
            logger.warning("Azure API call not completed", extra={**extra, "signal": type(classified).__name__})
            raise classified from e

    def _wait(self, operation: str, poller: LROPoller[T]) -> T:
        """Wait for a long-running operation, bounded by the operation timeout.

        LROPoller.result returns the in-progress resource when the timeout
        expires, so completion is checked explicitly.

        Raises:
            TimeoutError: If the operation is still running.
        """
        result = poller.result(timeout=self._timeout)
        if not poller.done():
            logger.error(
                "Azure operation timed out",
                extra={"operation": operation, "timeout_seconds": self._timeout, "status": poller.status()},
            )
            raise TimeoutError(f"{operation} did not complete within {self._timeout} seconds")
        return result

    # =========================================================================
    # Resource IDs
    # =========================================================================

    def resource_group_id(self, name: str) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{name}"

    @staticmethod
    def resource_id(parent_id: str, resource_type: str, name: str, child: bool = False) -> str:
        """Build the ID of a resource.

        Args:
            parent_id: Resource group ID, or the parent resource's ID for child types.
            resource_type: Full type, e.g. "Microsoft.Network/virtualNetworks".
            name: Resource name.
            child: The resource is nested under parent_id (e.g. a subnet).
        """
        if child:
            return f"{parent_id}/{resource_type.rsplit('/', 1)[-1]}/{name}"
        return f"{parent_id}/providers/{resource_type}/{name}"

    # =========================================================================
    # Resource groups
    # =========================================================================

    def get_resource_group(self, name: str) -> ResourceGroup | None:
        return self._call(
            f"get resource group {name}",
            lambda: self._client.resource_groups.get(name),
            missing_ok=True,
        )

    def create_or_update_resource_group(
        self, name: str, location: str, tags: dict[str, str] | None = None
    ) -> ResourceGroup:
        logger.info("Creating or updating resource group", extra={"resource_group": name, "location": location})
        result = self._call(
            f"create resource group {name}",
            lambda: self._client.resource_groups.create_or_update(
                name, ResourceGroup(location=location, tags=tags or {})
            ),
        )
        assert result is not None
        return result

    # =========================================================================
    # Generic resources
    # =========================================================================

    def get_resource(self, resource_id: str, api_version: str) -> GenericResource | None:
        return self._call(
            f"get {resource_id}",
            lambda: self._client.resources.get_by_id(resource_id, api_version),
            missing_ok=True,
        )

    def create_or_update_resource(
        self,
        resource_id: str,
        api_version: str,
        location: str | None,
        properties: dict[str, Any] | None,
        tags: dict[str, str] | None = None,
    ) -> GenericResource:
        logger.info(
            "Creating or updating resource",
            extra={"resource_id": resource_id, "api_version": api_version},
        )
        parameters = GenericResource(location=location, properties=properties or {}, tags=tags)
        result = self._call(
            f"create {resource_id}",
            lambda: self._wait(
                f"create {resource_id}",
                self._client.resources.begin_create_or_update_by_id(resource_id, api_version, parameters),
            ),
        )
        assert result is not None
        return result

    def delete_resource(self, resource_id: str, api_version: str) -> None:
        logger.info("Deleting resource", extra={"resource_id": resource_id})
        self._call(
            f"delete {resource_id}",
            lambda: self._wait(
                f"delete {resource_id}",
                self._client.resources.begin_delete_by_id(resource_id, api_version),
            ),
            missing_ok=True,
        )
