"""Tests for the declared resource model."""

import types

import pytest

from stackapply.errors import DuplicateIdError, UnknownResourceError
from stackapply.models import Ref
from stackapply.resource_model import ResourceModel


def test_declare_returns_resource():
    model = ResourceModel()

    resource = model.declare("network", "vpc", {"cidr": "10.0.0.0/16"})

    assert resource.kind == "network"
    assert resource.logical_id == "vpc"
    assert resource.properties == {"cidr": "10.0.0.0/16"}
    assert resource.physical_id is None
    assert "vpc" in model


def test_declare_duplicate_id_raises():
    model = ResourceModel()
    model.declare("network", "vpc")

    with pytest.raises(DuplicateIdError) as excinfo:
        model.declare("subnet", "vpc")

    assert excinfo.value.logical_id == "vpc"
    assert "vpc" in str(excinfo.value)


def test_reference_records_explicit_edge():
    model = ResourceModel()
    model.declare("log_group", "logs")
    fn = model.declare("function", "fn")

    model.reference(fn, "logs")
    model.reference(fn, "logs")

    assert fn.depends_on == ["logs"]
    assert model.dependencies("fn") == ["logs"]


def test_reference_unknown_target_raises():
    model = ResourceModel()
    fn = model.declare("function", "fn")

    with pytest.raises(UnknownResourceError) as excinfo:
        model.reference(fn, "missing")

    assert excinfo.value.logical_id == "missing"
    assert excinfo.value.referenced_by == "fn"


def test_declare_with_unknown_property_ref_raises_eagerly():
    model = ResourceModel()

    with pytest.raises(UnknownResourceError):
        model.declare("subnet", "subnet-a", {"network": Ref("vpc")})

    assert "subnet-a" not in model


def test_building_allows_forward_references():
    model = ResourceModel()

    with model.building():
        subnet = model.declare("subnet", "subnet-a", {"network": Ref("vpc")})
        fn = model.declare("function", "fn")
        model.reference(fn, "logs")
        model.declare("network", "vpc")
        model.declare("log_group", "logs")

    assert subnet.references() == ["vpc"]
    assert model.dependencies("fn") == ["logs"]


def test_building_unresolved_reference_raises_on_exit():
    model = ResourceModel()

    with pytest.raises(UnknownResourceError) as excinfo:
        with model.building():
            model.declare("subnet", "subnet-a", {"network": Ref("vpc")})

    assert excinfo.value.logical_id == "vpc"
    assert excinfo.value.referenced_by == "subnet-a"


def test_all_resources_is_lazy_and_ordered():
    model = ResourceModel()
    for name in ["c", "a", "b"]:
        model.declare("network", name)

    resources = model.all_resources()

    assert isinstance(resources, types.GeneratorType)
    assert [r.logical_id for r in resources] == ["c", "a", "b"]
    assert len(model) == 3


def test_get_unknown_raises():
    with pytest.raises(UnknownResourceError):
        ResourceModel().get("nope")
