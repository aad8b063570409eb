"""Tests for the task executor against the in-memory fake cloud."""

from __future__ import annotations

import io
import itertools
import threading
import time
from pathlib import Path

import pytest

from converge.api_target import ApiTarget
from converge.config import EngineConfig
from converge.dryrun_target import DryRunTarget
from converge.errors import (
    CannotChangeFieldError,
    DependencyCycleError,
    DependencyFailedError,
    InsufficientAccessError,
    LifecycleViolationError,
    RenderUnsupportedError,
    RequiredFieldError,
    RetryBudgetExceededError,
    RunCancelledError,
    TryAgainLaterError,
    UnknownDependencyError,
)
from converge.executor import TaskExecutor, run_tasks
from converge.lifecycle import Lifecycle, LifecycleOverride, LifecycleResolver
from converge.report import EXIT_SUCCESS, EXIT_TASK_FAILURE, TaskOutcome, TaskState
from converge.target import RenderRegistry, TargetKind
from converge.task import discover_addresses
from converge.terraform_target import TerraformTarget
from fake_cloud import (
    FakeCloud,
    LoadBalancer,
    Network,
    Subnet,
    build_context,
    standard_tasks,
)
from fake_cloud.tasks import render_network_api, render_subnet_api

FAST = EngineConfig(retry_backoff_base_seconds=0.0, retry_backoff_max_seconds=0.0)


def apply(cloud: FakeCloud, tasks, config: EngineConfig = FAST, **kwargs):
    """Run one live pass and return (report, ctx)."""
    ctx = build_context(ApiTarget(cloud), tasks, cloud=cloud)
    report = TaskExecutor(ctx, config=config, **kwargs).run()
    return report, ctx


class TestConvergence:
    """Tests for idempotence and convergence over repeated runs."""

    def test_creates_everything_on_empty_cloud(self) -> None:
        """Test that a first run creates every task."""
        cloud = FakeCloud()
        report, _ = apply(cloud, standard_tasks())

        assert report.success
        assert report.exit_code == EXIT_SUCCESS
        assert report.by_outcome(TaskOutcome.CREATED) == ["api", "main", "main-a"]
        assert cloud.object_count == 3

    def test_second_run_is_idempotent(self) -> None:
        """Test that re-running against the converged state mutates nothing."""
        cloud = FakeCloud()
        apply(cloud, standard_tasks())
        mutations_after_first = len(cloud.mutating_calls())

        report, _ = apply(cloud, standard_tasks())

        assert report.success
        assert len(cloud.mutating_calls()) == mutations_after_first
        assert report.by_outcome(TaskOutcome.UNCHANGED) == ["api", "main", "main-a"]

    def test_drift_converges_in_one_run(self) -> None:
        """Test that drifted state is updated once and then stays put."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", cidr="10.0.0.0/16", tags={"team": "someone-else"})

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16", tags={"team": "platform"})])

        assert report.result("main").outcome == TaskOutcome.UPDATED
        assert cloud.stored("Network", "main").attributes["tags"] == {"team": "platform"}
        assert report.result("main").changes[0].field == "tags"

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16", tags={"team": "platform"})])

        assert report.result("main").outcome == TaskOutcome.UNCHANGED
        assert len(cloud.calls_for("update")) == 1

    def test_references_compare_by_provider_id(self) -> None:
        """Test that an observed reference by ID matches a desired reference by name."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", provider_id="vpc-123", cidr="10.0.0.0/16")
        cloud.seed("Subnet", "main-a", network_id="vpc-123", cidr="10.0.1.0/24")

        report, _ = apply(
            cloud,
            [
                Network(name="main", cidr="10.0.0.0/16"),
                Subnet(name="main-a", network="main", cidr="10.0.1.0/24"),
            ],
        )

        assert report.result("main-a").outcome == TaskOutcome.UNCHANGED
        assert cloud.mutating_calls() == []

    def test_unset_fields_are_unmanaged(self) -> None:
        """Test that None in the desired state never produces a change."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", cidr="10.0.0.0/16", tags={"owner": "ops"})

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16")])

        assert report.result("main").outcome == TaskOutcome.UNCHANGED
        assert cloud.mutating_calls() == []


class TestOrdering:
    """Tests for dependency ordering."""

    def test_producers_render_before_consumers(self) -> None:
        """Test that Network, Subnet and LoadBalancer are created in order."""
        cloud = FakeCloud()
        apply(cloud, standard_tasks())

        created = [call.kind for call in cloud.calls_for("create")]
        assert created == ["Network", "Subnet", "LoadBalancer"]

    def test_consumer_receives_producer_id(self) -> None:
        """Test that the subnet is created with the network's provider ID."""
        cloud = FakeCloud()
        apply(cloud, standard_tasks())

        network = cloud.stored("Network", "main")
        subnet = cloud.stored("Subnet", "main-a")
        assert subnet.attributes["network_id"] == network.provider_id

    def test_depends_on_orders_unrelated_tasks(self) -> None:
        """Test that explicit depends_on adds an ordering edge."""
        cloud = FakeCloud()
        apply(
            cloud,
            [
                Network(name="a", cidr="10.1.0.0/16", depends_on=["b"]),
                Network(name="b", cidr="10.2.0.0/16"),
            ],
        )

        assert [call.name for call in cloud.calls_for("create")] == ["b", "a"]

    def test_concurrency_is_bounded(self) -> None:
        """Test that no more than max_concurrency tasks render at once."""
        cloud = FakeCloud()
        lock = threading.Lock()
        active = 0
        peak = 0

        def slow() -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        tasks = [Network(name=f"net-{i}", cidr=f"10.{i}.0.0/16") for i in range(6)]
        for task in tasks:
            cloud.on("create", "Network", task.name, slow)

        config = EngineConfig(max_concurrency=2, retry_backoff_base_seconds=0.0, retry_backoff_max_seconds=0.0)
        report, _ = apply(cloud, tasks, config=config)

        assert report.success
        assert peak <= 2


class TestPreflight:
    """Tests for errors detected before any task is observed."""

    def test_cycle_aborts_before_observation(self) -> None:
        """Test that a dependency cycle is reported with its path."""
        cloud = FakeCloud()
        tasks = [
            Network(name="a", cidr="10.1.0.0/16", depends_on=["b"]),
            Network(name="b", cidr="10.2.0.0/16", depends_on=["c"]),
            Network(name="c", cidr="10.3.0.0/16", depends_on=["a"]),
        ]

        with pytest.raises(DependencyCycleError) as exc_info:
            apply(cloud, tasks)

        assert exc_info.value.cycle == ["a", "b", "c", "a"]
        assert cloud.calls == []

    def test_unknown_reference_aborts(self) -> None:
        """Test that a reference to a missing task is a pre-flight error."""
        cloud = FakeCloud()

        with pytest.raises(UnknownDependencyError) as exc_info:
            apply(cloud, [Subnet(name="main-a", network="missing", cidr="10.0.1.0/24")])

        assert exc_info.value.missing == ["missing"]
        assert cloud.calls == []

    def test_unsupported_kind_aborts(self) -> None:
        """Test that a kind without a renderer for the target is rejected up front."""
        cloud = FakeCloud()
        registry = RenderRegistry()
        registry.register(Network.kind, TargetKind.API, render_network_api)
        registry.register(Subnet.kind, TargetKind.API, render_subnet_api)
        ctx = build_context(ApiTarget(cloud), standard_tasks(), cloud=cloud, registry=registry)

        with pytest.raises(RenderUnsupportedError) as exc_info:
            TaskExecutor(ctx, config=FAST).run()

        assert exc_info.value.task_kind == "LoadBalancer"
        assert exc_info.value.tasks == ["api"]
        assert cloud.calls == []

    def test_observe_only_tasks_need_no_renderer(self) -> None:
        """Test that exists-only tasks pass the renderer check."""
        cloud = FakeCloud()
        cloud.seed("LoadBalancer", "api", subnet_names=["main-a"], listeners=[443, 80], dns_name="x")
        registry = RenderRegistry()
        registry.register(Network.kind, TargetKind.API, render_network_api)
        registry.register(Subnet.kind, TargetKind.API, render_subnet_api)
        tasks = standard_tasks()
        tasks["api"] = LoadBalancer(
            name="api", subnets=["main-a"], listeners=[443, 80], lifecycle=Lifecycle.EXISTS_AND_VALIDATES
        )
        ctx = build_context(ApiTarget(cloud), tasks, cloud=cloud, registry=registry)

        report = TaskExecutor(ctx, config=FAST).run()

        assert report.success
        assert report.result("api").outcome == TaskOutcome.UNCHANGED


class TestValidation:
    """Tests for check_changes enforcement."""

    def test_missing_required_field_fails_without_render(self) -> None:
        """Test that creating a subnet without a CIDR fails the task."""
        cloud = FakeCloud()
        report, _ = apply(
            cloud,
            [Network(name="main", cidr="10.0.0.0/16"), Subnet(name="main-a", network="main")],
        )

        result = report.result("main-a")
        assert result.state == TaskState.FAILED
        assert isinstance(result.error, RequiredFieldError)
        assert str(result.error) == "Field is required: cidr"
        assert cloud.calls_for("create", "Subnet") == []

    def test_immutable_field_change_fails_without_render(self) -> None:
        """Test that changing an immutable field is rejected."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", provider_id="x", cidr="10.0.0.0/16")

        report, _ = apply(cloud, [Network(name="main", id="y", cidr="10.0.0.0/16")])

        result = report.result("main")
        assert isinstance(result.error, CannotChangeFieldError)
        assert result.error.field == "id"
        assert cloud.mutating_calls() == []
        assert report.exit_code == EXIT_TASK_FAILURE


class TestRetry:
    """Tests for TryAgainLater handling."""

    def test_retries_until_success(self) -> None:
        """Test that two retryable failures are followed by a successful attempt."""
        cloud = FakeCloud()
        cloud.fail("create", "Subnet", "main-a", TryAgainLaterError("network not visible"),
                   TryAgainLaterError("network not visible"))

        report, _ = apply(cloud, standard_tasks())

        assert report.success
        assert report.result("main-a").attempts == 3
        assert len(cloud.calls_for("create", "Subnet", "main-a")) == 3
        assert report.result("api").outcome == TaskOutcome.CREATED

    def test_attempt_budget_exhausted(self) -> None:
        """Test that a task retried beyond max_task_attempts fails."""
        cloud = FakeCloud()
        cloud.fail("create", "Subnet", "main-a", *[TryAgainLaterError("still busy")] * 5)
        config = EngineConfig(
            max_task_attempts=2, retry_backoff_base_seconds=0.0, retry_backoff_max_seconds=0.0
        )

        report, _ = apply(cloud, standard_tasks(), config=config)

        result = report.result("main-a")
        assert isinstance(result.error, RetryBudgetExceededError)
        assert result.error.attempts == 2
        assert result.error.last_reason == "still busy"
        assert len(cloud.calls_for("create", "Subnet")) == 2

    def test_duration_budget_exhausted(self) -> None:
        """Test that the wall-clock budget stops retries."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "main", *[TryAgainLaterError("throttled")] * 5)
        ticks = itertools.count(0, 10)
        config = EngineConfig(
            max_task_duration_seconds=5, retry_backoff_base_seconds=0.0, retry_backoff_max_seconds=0.0
        )

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16")], config=config,
                          clock=lambda: float(next(ticks)))

        result = report.result("main")
        assert isinstance(result.error, RetryBudgetExceededError)
        assert result.attempts == 1

    def test_retry_from_find(self) -> None:
        """Test that TryAgainLater raised while observing is retried too."""
        cloud = FakeCloud()
        cloud.fail("get", "Network", "main", TryAgainLaterError("eventual consistency"))

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16")])

        assert report.success
        assert report.result("main").attempts == 2


class TestFailurePropagation:
    """Tests for skip attribution and independent branches."""

    def test_dependents_are_skipped(self) -> None:
        """Test that a failure skips every transitive dependent."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "main", RuntimeError("quota exceeded"))

        report, _ = apply(cloud, standard_tasks())

        assert report.result("main").outcome == TaskOutcome.FAILED
        for name in ("main-a", "api"):
            result = report.result(name)
            assert result.outcome == TaskOutcome.SKIPPED
            assert result.caused_by == "main"
            assert isinstance(result.error, DependencyFailedError)
        assert cloud.calls_for("get", "Subnet") == []
        summary = report.format_summary()
        assert "  main: failed: quota exceeded" in summary
        assert "  main-a: skipped (dependency main failed)" in summary
        assert "  api: skipped (dependency main failed)" in summary

    def test_independent_branches_continue(self) -> None:
        """Test that a failure in one branch does not stop another."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "a", RuntimeError("boom"))
        tasks = [
            Network(name="a", cidr="10.1.0.0/16"),
            Subnet(name="a-1", network="a", cidr="10.1.1.0/24"),
            Network(name="b", cidr="10.2.0.0/16"),
            Subnet(name="b-1", network="b", cidr="10.2.1.0/24"),
        ]

        report, _ = apply(cloud, tasks)

        assert report.by_outcome(TaskOutcome.CREATED) == ["b", "b-1"]
        assert report.by_outcome(TaskOutcome.FAILED) == ["a"]
        assert report.by_outcome(TaskOutcome.SKIPPED) == ["a-1"]
        assert report.summary() == {"created": 2, "updated": 0, "unchanged": 0, "failed": 1, "skipped": 1}

    def test_cancel_stops_dispatch(self) -> None:
        """Test that cancellation lets in-flight work finish and skips the rest."""
        cloud = FakeCloud()
        ctx = build_context(ApiTarget(cloud), standard_tasks(), cloud=cloud)
        executor = TaskExecutor(ctx, config=FAST)
        cloud.on("create", "Network", "main", executor.cancel)

        report = executor.run()

        assert report.cancelled
        assert report.result("main").outcome == TaskOutcome.CREATED
        for name in ("main-a", "api"):
            assert report.result(name).outcome == TaskOutcome.SKIPPED
            assert isinstance(report.result(name).error, RunCancelledError)
        assert cloud.calls_for("get", "Subnet") == []
        summary = report.format_summary()
        assert summary.startswith("Run cancelled")
        assert "  main: created" in summary
        assert "  main-a: skipped (run cancelled)" in summary


class TestLifecycles:
    """Tests for per-task lifecycle policies."""

    def test_ignore_never_observes(self) -> None:
        """Test that ignored tasks are neither observed nor rendered."""
        cloud = FakeCloud()
        report, _ = apply(
            cloud, [Network(name="main", cidr="10.0.0.0/16", lifecycle=Lifecycle.IGNORE)]
        )

        assert report.success
        assert report.result("main").outcome == TaskOutcome.UNCHANGED
        assert cloud.calls == []

    def test_exists_and_validates_requires_resource(self) -> None:
        """Test that a missing resource violates exists_and_validates."""
        cloud = FakeCloud()
        report, _ = apply(
            cloud,
            [Network(name="main", cidr="10.0.0.0/16", lifecycle=Lifecycle.EXISTS_AND_VALIDATES)],
        )

        assert isinstance(report.result("main").error, LifecycleViolationError)
        assert cloud.mutating_calls() == []

    def test_exists_and_validates_rejects_drift(self) -> None:
        """Test that drift fails an exists_and_validates task."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", cidr="10.0.0.0/16", tags={"team": "other"})

        report, _ = apply(
            cloud,
            [
                Network(
                    name="main",
                    cidr="10.0.0.0/16",
                    tags={"team": "platform"},
                    lifecycle=Lifecycle.EXISTS_AND_VALIDATES,
                )
            ],
        )

        error = report.result("main").error
        assert isinstance(error, LifecycleViolationError)
        assert "tags" in str(error)
        assert cloud.mutating_calls() == []

    def test_exists_and_warn_if_changes_warns(self) -> None:
        """Test that drift is only reported under exists_and_warn_if_changes."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", cidr="10.0.0.0/16", tags={"team": "other"})

        report, _ = apply(
            cloud,
            [
                Network(
                    name="main",
                    cidr="10.0.0.0/16",
                    tags={"team": "platform"},
                    lifecycle=Lifecycle.EXISTS_AND_WARN_IF_CHANGES,
                )
            ],
        )

        result = report.result("main")
        assert result.outcome == TaskOutcome.UNCHANGED
        assert result.warnings
        assert cloud.mutating_calls() == []

    def test_insufficient_access_downgraded_to_warning(self) -> None:
        """Test warn_if_insufficient_access turns a permission error into a warning."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "main", InsufficientAccessError("AuthorizationFailed"))

        report, _ = apply(
            cloud,
            [Network(name="main", cidr="10.0.0.0/16", lifecycle=Lifecycle.WARN_IF_INSUFFICIENT_ACCESS)],
        )

        result = report.result("main")
        assert result.outcome == TaskOutcome.UNCHANGED
        assert "AuthorizationFailed" in result.warnings[0]

    def test_insufficient_access_fails_under_sync(self) -> None:
        """Test that a permission error is fatal for a sync task."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "main", InsufficientAccessError("AuthorizationFailed"))

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16")])

        assert isinstance(report.result("main").error, InsufficientAccessError)

    def test_override_replaces_declared_lifecycle(self) -> None:
        """Test that a resolver override applies to every task of a kind."""
        cloud = FakeCloud()
        resolver = LifecycleResolver(
            overrides=[LifecycleOverride(kinds=["network"], lifecycle=Lifecycle.IGNORE)]
        )

        report, _ = apply(cloud, [Network(name="main", cidr="10.0.0.0/16")], lifecycle_resolver=resolver)

        assert report.result("main").outcome == TaskOutcome.UNCHANGED
        assert cloud.calls == []

    def test_should_create_can_decline(self) -> None:
        """Test that a task implementing should_create can skip creation."""

        class SharedNetwork(Network):
            def should_create(self, actual, changes) -> bool:
                return actual is not None

        cloud = FakeCloud()
        report, _ = apply(cloud, [SharedNetwork(name="main", cidr="10.0.0.0/16")])

        assert report.result("main").outcome == TaskOutcome.UNCHANGED
        assert cloud.mutating_calls() == []


class TestDryRun:
    """Tests for plan isolation."""

    def test_plan_makes_no_mutating_calls(self) -> None:
        """Test that a dry run observes but never mutates."""
        cloud = FakeCloud()
        out = io.StringIO()
        target = DryRunTarget(out)
        ctx = build_context(target, standard_tasks(), cloud=cloud)

        report = run_tasks(ctx, FAST)

        assert report.success
        assert target.planned_creates() == ["api", "main", "main-a"]
        assert cloud.mutating_calls() == []
        assert cloud.calls_for("get")
        assert "Will create resources:" in out.getvalue()

    def test_plan_lists_updates(self) -> None:
        """Test that drift shows up as a planned update with old and new values."""
        cloud = FakeCloud()
        cloud.seed("Network", "main", cidr="10.0.0.0/16", tags={"team": "other"})
        target = DryRunTarget(io.StringIO())
        ctx = build_context(
            target, [Network(name="main", cidr="10.0.0.0/16", tags={"team": "platform"})], cloud=cloud
        )

        run_tasks(ctx, FAST)

        assert target.planned_updates() == ["main"]
        entry = target.plan_entries()[0]
        assert (entry.field, entry.old, entry.new) == ("tags", {"team": "other"}, {"team": "platform"})


class TestDocumentTargets:
    """Tests for runs against document targets."""

    def test_terraform_links_dependencies(self, tmp_path: Path) -> None:
        """Test that references become Terraform interpolations."""
        target = TerraformTarget(tmp_path)
        ctx = build_context(target, standard_tasks())

        report = run_tasks(ctx, FAST)

        assert report.success
        assert target.resource("aws_subnet", "main-a")["vpc_id"] == "${aws_vpc.main.id}"
        assert target.resource("aws_lb", "api")["subnets"] == ["${aws_subnet.main-a.id}"]
        assert target.written_path == tmp_path / "kubernetes.tf.json"

    def test_link_to_unrendered_task_fails(self, tmp_path: Path) -> None:
        """Test that linking to an ignored task fails and nothing is written."""
        tasks = standard_tasks()
        tasks["main"] = Network(name="main", cidr="10.0.0.0/16", lifecycle=Lifecycle.IGNORE)
        target = TerraformTarget(tmp_path)

        report = run_tasks(build_context(target, tasks), FAST)

        assert isinstance(report.result("main-a").error, ValueError)
        assert report.result("api").caused_by == "main-a"
        assert target.written_path is None
        assert not (tmp_path / "kubernetes.tf.json").exists()


class TestAddressDiscovery:
    """Tests for API server address discovery."""

    def test_discovers_load_balancer_address(self) -> None:
        """Test that addresses of API server load balancers are collected."""
        cloud = FakeCloud()
        _, ctx = apply(cloud, standard_tasks())

        assert discover_addresses(ctx) == ["api.lb.example.com"]

    def test_skips_non_api_server_tasks(self) -> None:
        """Test that api_server_only filters out other load balancers."""
        cloud = FakeCloud()
        tasks = standard_tasks()
        tasks["api"] = LoadBalancer(name="api", subnets=["main-a"], for_api_server=False)
        _, ctx = apply(cloud, tasks)

        assert discover_addresses(ctx) == []
        assert discover_addresses(ctx, api_server_only=False) == ["api.lb.example.com"]


class TestRunSummary:
    """Tests for the summary printed at the end of a run."""

    def test_live_run_lists_every_task(self) -> None:
        """Test that a successful live run prints each task's outcome."""
        cloud = FakeCloud()
        out = io.StringIO()
        ctx = build_context(ApiTarget(cloud, out), standard_tasks(), cloud=cloud)

        TaskExecutor(ctx, config=FAST).run()

        assert out.getvalue() == (
            "Run succeeded: 3 created\n"
            "  api: created\n"
            "  main: created\n"
            "  main-a: created\n"
        )

    def test_plan_lists_skips_with_cause(self) -> None:
        """Test that a failed plan names the upstream task of each skip."""
        cloud = FakeCloud()
        cloud.fail("get", "Network", "main", RuntimeError("denied"))
        out = io.StringIO()

        run_tasks(build_context(DryRunTarget(out), standard_tasks(), cloud=cloud), FAST)

        assert "Run failed: 1 failed, 2 skipped\n" in out.getvalue()
        assert "  api: skipped (dependency main failed)\n" in out.getvalue()
        assert "  main: failed: denied\n" in out.getvalue()

    def test_log_includes_task_results(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that the run log carries one entry per task."""
        cloud = FakeCloud()
        cloud.fail("create", "Network", "main", RuntimeError("quota exceeded"))

        with caplog.at_level("ERROR", logger="converge.report"):
            apply(cloud, standard_tasks())

        record = next(r for r in caplog.records if r.getMessage() == "Run failed")
        tasks = {entry["name"]: entry for entry in record.tasks}
        assert tasks["main"]["error"] == "quota exceeded"
        assert tasks["main-a"]["caused_by"] == "main"
        assert tasks["api"]["outcome"] == "skipped"


class TestInterrupt:
    """Tests for Ctrl-C during a run."""

    def test_completed_outcome_survives_interrupt(self) -> None:
        """Test that a task finishing as the interrupt lands keeps its outcome."""
        cloud = FakeCloud()
        ctx = build_context(ApiTarget(cloud, io.StringIO()), [Network(name="main", cidr="10.0.0.0/16")], cloud=cloud)
        executor = TaskExecutor(ctx, config=FAST)
        handle_completion = executor._handle_completion
        interrupted: list[str] = []

        def interrupt_once(name, *args):
            if not interrupted:
                interrupted.append(name)
                raise KeyboardInterrupt
            handle_completion(name, *args)

        executor._handle_completion = interrupt_once
        report = executor.run()

        assert interrupted == ["main"]
        assert report.cancelled
        assert report.result("main").outcome == TaskOutcome.CREATED
        assert cloud.stored("Network", "main") is not None
