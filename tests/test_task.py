"""Tests for the task model."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from converge.changes import Changes
from converge.errors import CannotChangeFieldError, RequiredFieldError
from converge.lifecycle import Lifecycle
from converge.task import CompareWithID, HasAddress, ShouldCreate, Task, TaskRef
from fake_cloud import LoadBalancer, Network, Subnet


class TestTaskRef:
    """Tests for TaskRef."""

    def test_from_string(self) -> None:
        """Test that a bare string is a reference by name."""
        ref = TaskRef.model_validate("main")
        assert ref.name == "main"
        assert ref.id is None
        assert str(ref) == "main"

    def test_id_only(self) -> None:
        """Test a reference carrying only a provider ID."""
        assert str(TaskRef(id="vpc-1")) == "vpc-1"

    def test_requires_name_or_id(self) -> None:
        """Test that an empty reference is rejected."""
        with pytest.raises(ValidationError):
            TaskRef()

    def test_frozen(self) -> None:
        """Test that references are immutable and hashable."""
        ref = TaskRef(name="a")
        with pytest.raises(ValidationError):
            ref.name = "b"
        assert {ref, TaskRef(name="a")} == {ref}


class TestTask:
    """Tests for the Task base class."""

    def test_name_required(self) -> None:
        """Test name validation."""
        with pytest.raises(ValidationError):
            Network(name="")

    def test_extra_fields_forbidden(self) -> None:
        """Test that unknown attributes are rejected."""
        with pytest.raises(ValidationError):
            Network(name="a", color="blue")

    def test_aliases(self) -> None:
        """Test that camelCase aliases populate fields."""
        lb = LoadBalancer.model_validate({"name": "lb", "forApiServer": False, "dependsOn": ["x"]})
        assert lb.for_api_server is False
        assert lb.depends_on == ["x"]

    def test_defaults(self) -> None:
        """Test default lifecycle and dependencies."""
        task = Network(name="main")
        assert task.lifecycle == Lifecycle.SYNC
        assert task.depends_on == []
        assert task.describe() == "Network/main"

    def test_find_must_be_implemented(self) -> None:
        """Test that the base find raises."""
        with pytest.raises(NotImplementedError):
            Task(name="x").find(None)

    def test_references(self) -> None:
        """Test reference collection from reference fields."""
        lb = LoadBalancer(name="lb", subnets=["a", "b"])
        assert lb.referenced_names() == ["a", "b"]
        assert Subnet(name="s", network="n").referenced_names() == ["n"]
        assert Network(name="n").references() == []

    def test_field_spec(self) -> None:
        """Test FieldSpec lookup."""
        assert Subnet.field_spec("cidr").immutable
        assert Subnet.field_spec("missing") is None


class TestCheckChanges:
    """Tests for the default check_changes rules."""

    def test_required_on_create(self) -> None:
        """Test that required fields must be set on create."""
        subnet = Subnet(name="s", network="n")

        with pytest.raises(RequiredFieldError) as exc_info:
            subnet.check_changes(None, Changes(Subnet, {"network": TaskRef(name="n")}))

        assert exc_info.value.field == "cidr"

    def test_required_not_checked_on_update(self) -> None:
        """Test that required fields only apply to creation."""
        actual = Subnet(name="s", network="n", cidr="10.0.0.0/24")
        Subnet(name="s", network="n").check_changes(actual, Changes(Subnet))

    def test_immutable_on_update(self) -> None:
        """Test that immutable fields may not change after creation."""
        actual = Subnet(name="s", network="n", cidr="10.0.0.0/24")
        expected = Subnet(name="s", network="n", cidr="10.0.9.0/24")

        with pytest.raises(CannotChangeFieldError) as exc_info:
            expected.check_changes(actual, Changes(Subnet, {"cidr": "10.0.9.0/24"}))

        assert str(exc_info.value) == "Field cannot be changed: cidr"

    def test_mutable_on_update(self) -> None:
        """Test that mutable fields may change."""
        actual = Subnet(name="s", network="n", cidr="10.0.0.0/24", zone="a")
        expected = Subnet(name="s", network="n", cidr="10.0.0.0/24", zone="b")
        expected.check_changes(actual, Changes(Subnet, {"zone": "b"}))


class TestCapabilities:
    """Tests for optional capability detection."""

    def test_detection(self) -> None:
        """Test runtime protocol checks on the fake kinds."""
        assert isinstance(Network(name="n"), CompareWithID)
        assert not isinstance(Subnet(name="s"), CompareWithID)
        assert isinstance(LoadBalancer(name="lb"), HasAddress)
        assert not isinstance(Network(name="n"), ShouldCreate)
