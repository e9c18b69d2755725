"""Tests for the diff engine."""

from stackapply.diff import KNOWN_AFTER_APPLY, DiffEngine, diff_properties
from stackapply.kinds import KindSpec
from stackapply.models import (
    ChangeAction,
    Ref,
    ReplaceStrategy,
    Snapshot,
    SnapshotEntry,
)
from stackapply.resource_model import ResourceModel
from tests.conftest import build_network, make_snapshot


def _actions(change_set):
    return {c.logical_id: c.action for c in change_set}


def test_empty_snapshot_creates_everything_in_topological_order():
    change_set = DiffEngine().diff(build_network(), Snapshot())

    assert [c.logical_id for c in change_set] == ["vpc", "subnet-a", "web-sg", "fn"]
    assert all(c.action == ChangeAction.CREATE for c in change_set)
    assert change_set.get("fn").depends_on == ("subnet-a", "web-sg")


def test_create_diffs_never_force_replacement():
    change_set = DiffEngine().diff(build_network(), Snapshot())

    vpc = change_set.get("vpc")
    assert {pd.path for pd in vpc.property_diffs} == {"name", "cidr", "nat_gateways"}
    assert not any(pd.requires_replace for pd in vpc.property_diffs)


def test_unchanged_model_is_all_noop():
    model = build_network()
    snapshot = make_snapshot(model)

    change_set = DiffEngine().diff(model, snapshot)

    assert set(_actions(change_set).values()) == {ChangeAction.NOOP}
    assert not change_set.has_changes


def test_diff_is_idempotent():
    model = build_network(memory=256)
    snapshot = make_snapshot(build_network())
    engine = DiffEngine()

    first = engine.diff(model, snapshot)
    second = engine.diff(model, snapshot)

    assert first == second


def test_mutable_change_is_update():
    snapshot = make_snapshot(build_network())

    change_set = DiffEngine().diff(build_network(memory=512), snapshot)

    fn = change_set.get("fn")
    assert fn.action == ChangeAction.UPDATE
    assert fn.physical_id == "fn-id"
    assert [(pd.path, pd.before, pd.after) for pd in fn.property_diffs] == [
        ("memory", 128, 512)
    ]
    assert _actions(change_set)["vpc"] == ChangeAction.NOOP


def test_immutable_change_is_replace_with_kind_strategy():
    snapshot = make_snapshot(build_network())

    change_set = DiffEngine().diff(build_network(sg_description="changed"), snapshot)

    sg = change_set.get("web-sg")
    assert sg.action == ChangeAction.REPLACE
    assert sg.strategy == ReplaceStrategy.CREATE_BEFORE_DELETE
    assert sg.property_diffs[0].requires_replace


def test_replace_propagates_to_dependents():
    snapshot = make_snapshot(build_network())

    change_set = DiffEngine().diff(build_network(cidr="10.1.0.0/16"), snapshot)

    actions = _actions(change_set)
    assert actions["vpc"] == ChangeAction.REPLACE
    # The function keeps existing across the run, so everything it reaches is
    # replaced create-before-delete.
    assert change_set.get("vpc").strategy == ReplaceStrategy.CREATE_BEFORE_DELETE
    assert change_set.get("subnet-a").strategy == ReplaceStrategy.CREATE_BEFORE_DELETE
    assert change_set.get("vpc").old_dependents == ("subnet-a", "web-sg")
    assert change_set.get("vpc").reason == "created before delete so subnet-a can move to it"
    # `network` is immutable on subnets and security groups.
    assert actions["subnet-a"] == ChangeAction.REPLACE
    assert actions["web-sg"] == ChangeAction.REPLACE
    assert "references replaced resource vpc" in change_set.get("subnet-a").reason
    # The function only references them through mutable fields.
    assert actions["fn"] == ChangeAction.UPDATE
    assert change_set.get("fn").reason == "dependency subnet-a is replaced"
    subnets = [pd for pd in change_set.get("fn").property_diffs if pd.path == "subnets"]
    assert subnets[0].after == KNOWN_AFTER_APPLY
    assert subnets[0].before == ["subnet-a-id"]


def test_replace_forces_mutable_referencer_to_update():
    model = ResourceModel()
    model.declare("network", "a", {"cidr": "10.0.0.0/16"})
    model.declare("peering", "b", {"peer": Ref("a")})
    snapshot = make_snapshot(model)

    changed = ResourceModel()
    changed.declare("network", "a", {"cidr": "10.9.0.0/16"})
    changed.declare("peering", "b", {"peer": Ref("a")})
    change_set = DiffEngine().diff(changed, snapshot)

    assert _actions(change_set) == {"a": ChangeAction.REPLACE, "b": ChangeAction.UPDATE}


def test_replace_propagation_is_transitive():
    def build(cidr):
        model = ResourceModel()
        model.declare("network", "a", {"cidr": cidr})
        model.declare("peering", "b", {"peer": Ref("a")})
        model.declare("route", "c", {"via": Ref("b")})
        model.declare("route", "unrelated", {"cidr": "0.0.0.0/0"})
        return model

    change_set = DiffEngine().diff(build("10.1.0.0/16"), make_snapshot(build("10.0.0.0/16")))

    actions = _actions(change_set)
    assert actions["c"] == ChangeAction.UPDATE
    assert actions["unrelated"] == ChangeAction.NOOP
    assert change_set.get("c").reason == "dependency b is affected by a replacement"


def test_kind_change_is_replace():
    model = ResourceModel()
    model.declare("network", "thing", {"cidr": "10.0.0.0/16"})
    snapshot = make_snapshot(model)

    changed = ResourceModel()
    changed.declare("subnet", "thing", {"cidr": "10.0.0.0/16"})
    change = DiffEngine().diff(changed, snapshot).get("thing")

    assert change.action == ChangeAction.REPLACE
    assert "kind changed" in change.reason


def test_removed_resources_deleted_in_reverse_topological_order():
    snapshot = make_snapshot(build_network())
    model = ResourceModel()
    model.declare("network", "vpc", {"name": "vpc", "cidr": "10.0.0.0/16", "nat_gateways": 1})

    change_set = DiffEngine().diff(model, snapshot)

    deletes = [c.logical_id for c in change_set if c.action == ChangeAction.DELETE]
    assert deletes == ["fn", "web-sg", "subnet-a"]
    assert change_set.get("subnet-a").depends_on == ("fn",)
    assert change_set.get("subnet-a").physical_id == "subnet-a-id"
    assert change_set.get("vpc").action == ChangeAction.NOOP


def test_deletes_follow_model_changes():
    snapshot = make_snapshot(build_network())

    change_set = DiffEngine().diff(ResourceModel(), snapshot)

    assert [c.logical_id for c in change_set] == ["fn", "web-sg", "subnet-a", "vpc"]


def test_custom_kind_specs_override_defaults():
    model = ResourceModel()
    model.declare("network", "vpc", {"cidr": "10.0.0.0/16"})
    snapshot = make_snapshot(model)

    changed = ResourceModel()
    changed.declare("network", "vpc", {"cidr": "10.5.0.0/16"})
    engine = DiffEngine(kinds={"network": KindSpec("network")})

    assert engine.diff(changed, snapshot).get("vpc").action == ChangeAction.UPDATE


def test_diff_properties_reports_nested_paths():
    spec = KindSpec("security_group", immutable=frozenset({"description"}))
    before = {"description": "a", "limits": {"cpu": 1, "mem": 2}, "gone": True}
    after = {"description": "a", "limits": {"cpu": 2, "mem": 2, "disk": 5}}

    diffs = diff_properties(before, after, spec)

    assert [(d.path, d.before, d.after) for d in diffs] == [
        ("limits.cpu", 1, 2),
        ("limits.disk", None, 5),
        ("gone", True, None),
    ]
    assert not any(d.requires_replace for d in diffs)


def test_snapshot_refs_compare_by_target():
    model = ResourceModel()
    model.declare("network", "vpc", {"cidr": "10.0.0.0/16"})
    model.declare("subnet", "s", {"network": Ref("vpc")})
    snapshot = Snapshot()
    snapshot.put(SnapshotEntry("vpc", "network", "vpc-1", {"cidr": "10.0.0.0/16"}))
    snapshot.put(
        SnapshotEntry("s", "subnet", "s-1", {"network": {"Ref": "vpc"}}, dependencies=("vpc",))
    )

    assert not DiffEngine().diff(model, snapshot).has_changes


def test_delete_before_create_kept_when_dependents_are_replaced_too():
    def build(cidr):
        model = ResourceModel()
        model.declare("network", "a", {"cidr": cidr})
        model.declare("subnet", "b", {"network": Ref("a")})
        return model

    change_set = DiffEngine().diff(build("10.1.0.0/16"), make_snapshot(build("10.0.0.0/16")))

    a, b = change_set.get("a"), change_set.get("b")
    assert a.strategy == b.strategy == ReplaceStrategy.DELETE_BEFORE_CREATE
    assert a.old_dependents == ("b",)
    assert b.old_dependents == ()
    assert a.reason is None


def test_changed_nested_mapping_with_replaced_reference_reported_once():
    def build(cidr, size):
        model = ResourceModel()
        model.declare("network", "a", {"cidr": cidr})
        model.declare("peering", "b", {"config": {"peer": Ref("a"), "size": size}})
        return model

    change_set = DiffEngine().diff(build("10.1.0.0/16", 2), make_snapshot(build("10.0.0.0/16", 1)))

    b = change_set.get("b")
    assert [pd.path for pd in b.property_diffs] == ["config.size"]
    assert b.action == ChangeAction.UPDATE


def test_explicit_dependency_change_is_an_update():
    def build(depends_on):
        model = ResourceModel()
        model.declare("log_group", "logs", {"name": "logs"})
        model.declare("function", "fn", {"name": "fn"}, depends_on=depends_on)
        return model

    change_set = DiffEngine().diff(build(["logs"]), make_snapshot(build(())))

    fn = change_set.get("fn")
    assert fn.action == ChangeAction.UPDATE
    assert fn.reason == "dependencies changed"
    assert fn.property_diffs == ()
    assert fn.depends_on == ("logs",)
