"""In-memory cloud for engine tests.

Provides a fake cloud with call recording and failure injection, plus three
fake task kinds (Network -> Subnet -> LoadBalancer) rendering to the live
API, Terraform and CloudFormation targets.

Usage:
    from fake_cloud import FakeCloud, build_context, standard_tasks

    cloud = FakeCloud()
    ctx = build_context(ApiTarget(cloud), standard_tasks(), cloud=cloud)
    report = TaskExecutor(ctx).run()
"""

from .cloud import MUTATING_OPERATIONS, FakeCall, FakeCloud, FakeObject
from .tasks import (
    FAKE_TASK_TYPES,
    LoadBalancer,
    Network,
    Subnet,
    build_context,
    build_registry,
    standard_tasks,
)

__all__ = [
    "FAKE_TASK_TYPES",
    "MUTATING_OPERATIONS",
    "FakeCall",
    "FakeCloud",
    "FakeObject",
    "LoadBalancer",
    "Network",
    "Subnet",
    "build_context",
    "build_registry",
    "standard_tasks",
]
