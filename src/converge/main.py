"""Run orchestration: from a manifest file to an exit code.

Exit codes:
    0  every task converged (or the document was written)
    1  at least one task failed or was skipped
    2  configuration, manifest or pre-flight error; nothing was touched
"""

from __future__ import annotations

import dataclasses
import json
import logging
import signal
import sys
import threading
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any

from .config import CloudProvider, ClusterConfig, ConfigurationError, EngineConfig
from .context import RunContext
from .errors import PreflightError
from .executor import TaskExecutor
from .lifecycle import create_lifecycle_resolver_from_env, parse_lifecycle_overrides
from .manifest import ManifestError, load_manifest
from .report import EXIT_PREFLIGHT_FAILURE, EXIT_TASK_FAILURE
from .target import RenderRegistry, Target
from .task import Task, discover_addresses

logger = logging.getLogger(__name__)

# Attributes every LogRecord has; anything else was passed via extra
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class RunMode(str, Enum):
    """What a run produces."""

    PLAN = "plan"
    APPLY = "apply"
    TERRAFORM = "terraform"
    CLOUDFORMATION = "cloudformation"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = False, verbose: bool = False) -> None:
    """Configure logging on stderr, JSON for production or plain text.

    Calling it again replaces the handler installed by a previous call.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    handler.set_name("converge")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "converge":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_cloud(cluster: ClusterConfig, config: EngineConfig) -> Any:
    """Create the live cloud handle for a cluster.

    Raises:
        ConfigurationError: If the provider has no live handle or is missing settings.
    """
    if cluster.provider != CloudProvider.AZURE:
        raise ConfigurationError(f"No live cloud handle for provider '{cluster.provider.value}'")
    if not cluster.subscription_id:
        raise ConfigurationError("cluster.subscriptionId is required for Azure")

    # Imported lazily so document targets work without Azure credentials
    from .azure import AzureCloud, get_credential

    return AzureCloud(
        subscription_id=cluster.subscription_id,
        credential=get_credential(cluster.managed_identity_client_id),
        operation_timeout_seconds=config.cloud_operation_timeout_seconds,
    )


def build_target(
    mode: RunMode,
    cluster: ClusterConfig,
    cloud: Any | None,
    out_dir: Path | None = None,
    output_format: str = "json",
    out: IO[str] | None = None,
) -> Target:
    """Create the target for a run mode."""
    match mode:
        case RunMode.APPLY:
            from .api_target import ApiTarget

            return ApiTarget(cloud, out)
        case RunMode.PLAN:
            from .dryrun_target import DryRunTarget

            return DryRunTarget(out)
        case RunMode.TERRAFORM:
            from .terraform_target import TerraformTarget

            if out_dir is None:
                raise ConfigurationError("An output directory is required for Terraform")
            if cluster.provider == CloudProvider.AZURE:
                from .azure_tasks import TERRAFORM_REQUIRED_PROVIDERS, terraform_providers

                return TerraformTarget(
                    out_dir,
                    providers=terraform_providers(cluster.subscription_id),
                    required_providers=TERRAFORM_REQUIRED_PROVIDERS,
                )
            return TerraformTarget(out_dir)
        case RunMode.CLOUDFORMATION:
            from .cloudformation_target import CloudFormationTarget

            if out_dir is None:
                raise ConfigurationError("An output directory is required for CloudFormation")
            return CloudFormationTarget(out_dir, output_format=output_format)
    raise ConfigurationError(f"Unknown run mode: {mode}")


def run_engine(
    mode: RunMode,
    manifest_path: Path,
    *,
    out_dir: Path | None = None,
    output_format: str = "json",
    max_concurrency: int | None = None,
    lifecycle_overrides: tuple[str, ...] | list[str] = (),
    task_types: dict[str, type[Task]] | None = None,
    registry: RenderRegistry | None = None,
    cloud: Any | None = None,
    out: IO[str] | None = None,
) -> int:
    """Load a manifest, run one pass and return the process exit code.

    Args:
        mode: What the run produces.
        manifest_path: Task manifest.
        out_dir: Output directory for document targets.
        output_format: "json" or "yaml" for CloudFormation.
        max_concurrency: Overrides MAX_CONCURRENCY from the environment.
        lifecycle_overrides: KIND=lifecycle strings; they take precedence over
            manifest and environment overrides.
        task_types: Known task kinds (defaults to the Azure kinds).
        registry: Render functions (defaults to the Azure renderers).
        cloud: Pre-built cloud handle; created from the cluster settings when
            a live run needs one.
        out: Stream for the plan and run summary.
    """
    try:
        config = EngineConfig.from_env()
        if max_concurrency is not None:
            config = dataclasses.replace(config, max_concurrency=max_concurrency)
        cli_overrides = parse_lifecycle_overrides(list(lifecycle_overrides))
    except (ConfigurationError, ValueError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_PREFLIGHT_FAILURE

    if task_types is None or registry is None:
        from .azure_tasks import AZURE_TASK_TYPES, register_azure_renderers

        task_types = task_types or AZURE_TASK_TYPES
        registry = registry or register_azure_renderers(RenderRegistry())

    try:
        manifest = load_manifest(manifest_path, task_types)
    except ManifestError as e:
        logger.error("Manifest error", extra={"error": str(e), "path": str(manifest_path)})
        return EXIT_PREFLIGHT_FAILURE

    try:
        if cloud is None and mode in (RunMode.APPLY, RunMode.PLAN):
            cloud = build_cloud(manifest.cluster, config)
        target = build_target(mode, manifest.cluster, cloud, out_dir, output_format, out)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_PREFLIGHT_FAILURE

    resolver = create_lifecycle_resolver_from_env(cli_overrides + manifest.lifecycle_overrides)
    ctx = RunContext(
        target=target,
        cloud=cloud,
        cluster=manifest.cluster,
        tasks=manifest.tasks,
        renderers=registry,
        engine=config,
    )
    executor = TaskExecutor(ctx, config=config, lifecycle_resolver=resolver)

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: executor.cancel())

    try:
        report = executor.run()
    except PreflightError as e:
        logger.error("Pre-flight check failed", extra={"error": str(e), "error_type": type(e).__name__})
        return EXIT_PREFLIGHT_FAILURE
    except Exception as e:
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        return EXIT_TASK_FAILURE
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    if mode == RunMode.APPLY and report.success:
        addresses = discover_addresses(ctx)
        if addresses:
            logger.info("API server addresses", extra={"addresses": addresses})

    return report.exit_code
