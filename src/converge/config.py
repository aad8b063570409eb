"""Configuration management with validation.

Bounds are enforced at construction time so a misconfigured run fails
before any task is observed.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum


class CloudProvider(str, Enum):
    """Cloud providers a cluster can be provisioned on."""

    AZURE = "azure"
    AWS = "aws"
    GCE = "gce"
    HETZNER = "hetzner"
    OPENSTACK = "openstack"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_MAX_TASK_ATTEMPTS = 10
MAX_MAX_TASK_ATTEMPTS = 100

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 30.0

DEFAULT_MAX_TASK_DURATION_SECONDS = 600
MAX_MAX_TASK_DURATION_SECONDS = 3600

DEFAULT_CLOUD_OPERATION_TIMEOUT_SECONDS = 1800

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max task manifest
MAX_TASKS_PER_RUN = 2000

# Input validation patterns
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9-]*$"


@dataclass(frozen=True)
class EngineConfig:
    """Scheduler and retry configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Worker pool size, kept small to stay under cloud API rate limits
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Retry bounds for TryAgainLater signals
    max_task_attempts: int = DEFAULT_MAX_TASK_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    max_task_duration_seconds: float = DEFAULT_MAX_TASK_DURATION_SECONDS

    # Upper bound for a single long-running cloud operation
    cloud_operation_timeout_seconds: int = DEFAULT_CLOUD_OPERATION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not (1 <= self.max_task_attempts <= MAX_MAX_TASK_ATTEMPTS):
            errors.append(f"MAX_TASK_ATTEMPTS must be between 1 and {MAX_MAX_TASK_ATTEMPTS}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if not (0 < self.max_task_duration_seconds <= MAX_MAX_TASK_DURATION_SECONDS):
            errors.append(
                f"MAX_TASK_DURATION must be between 0 and {MAX_MAX_TASK_DURATION_SECONDS} seconds"
            )

        if self.cloud_operation_timeout_seconds < 1:
            errors.append("CLOUD_OPERATION_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            MAX_CONCURRENCY: Worker pool size (default: 4)
            MAX_TASK_ATTEMPTS: Attempts per task before giving up (default: 10)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 2)
            RETRY_BACKOFF_MAX: Backoff ceiling in seconds (default: 30)
            MAX_TASK_DURATION: Wall-clock retry budget per task (default: 600)
            CLOUD_OPERATION_TIMEOUT: Timeout for long-running cloud calls (default: 1800)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_task_attempts=get_int("MAX_TASK_ATTEMPTS", DEFAULT_MAX_TASK_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            max_task_duration_seconds=get_float(
                "MAX_TASK_DURATION", DEFAULT_MAX_TASK_DURATION_SECONDS
            ),
            cloud_operation_timeout_seconds=get_int(
                "CLOUD_OPERATION_TIMEOUT", DEFAULT_CLOUD_OPERATION_TIMEOUT_SECONDS
            ),
        )


@dataclass(frozen=True)
class ClusterConfig:
    """Cluster-wide settings shared by every task in a run."""

    name: str
    provider: CloudProvider = CloudProvider.AZURE
    location: str = ""

    # Azure only
    subscription_id: str | None = None
    managed_identity_client_id: str | None = None

    # Tags applied to every resource that supports them
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate cluster settings.

        SECURITY: identifiers end up in resource IDs and documents, so their
        format is checked at the boundary.
        """
        errors: list[str] = []

        if not self.name:
            errors.append("cluster name is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.name):
            errors.append(f"cluster name must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.name}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"location is not a valid region name: {self.location}")

        if self.provider == CloudProvider.AZURE and self.subscription_id:
            if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                errors.append(f"subscription ID must be a valid GUID: {self.subscription_id}")

        if errors:
            error_msg = "Cluster configuration invalid:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def common_tags(self) -> dict[str, str]:
        """Tags identifying resources owned by this cluster."""
        tags = {"KubernetesCluster": self.name}
        tags.update(self.tags)
        return tags
