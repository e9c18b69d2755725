"""Shared test fixtures."""

import threading
from pathlib import Path

import pytest

from stackapply.models import Ref, Snapshot, SnapshotEntry, resolve_refs, to_document
from stackapply.providers.base import ProviderRegistry
from stackapply.resource_model import ResourceModel
from stackapply.state import StateStore

EXAMPLE_DOCUMENT = Path(__file__).resolve().parent.parent / "examples" / "network.yaml"


class ScriptedProvider:
    """Records every call and raises scripted errors keyed by (operation, name).

    Resources are identified by their `name` property; update and delete
    look the name up from the physical id.
    """

    def __init__(self, prefix="res"):
        self.prefix = prefix
        self.calls: list[tuple[str, str]] = []
        self.live: dict[str, dict] = {}
        self._names: dict[str, str] = {}
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._delays: dict[tuple[str, str], float] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def fail(self, operation, name, *errors):
        self._failures[(operation, name)] = list(errors)

    def delay(self, operation, name, seconds):
        self._delays[(operation, name)] = seconds

    def seed(self, physical_id, name, properties=None):
        self._names[physical_id] = name
        self.live[physical_id] = dict(properties or {"name": name})

    def _before(self, operation, name):
        with self._lock:
            self.calls.append((operation, name))
            errors = self._failures.get((operation, name))
            error = errors.pop(0) if errors else None
            delay = self._delays.pop((operation, name), 0)
        if delay:
            threading.Event().wait(delay)
        if error is not None:
            raise error

    def create(self, properties):
        name = properties.get("name", "?")
        self._before("create", name)
        with self._lock:
            self._counter += 1
            physical_id = f"{self.prefix}-{self._counter}"
            self._names[physical_id] = name
            self.live[physical_id] = dict(properties)
        return physical_id

    def update(self, physical_id, properties):
        self._before("update", self._names.get(physical_id, physical_id))
        self.live[physical_id] = dict(properties)

    def delete(self, physical_id):
        self._before("delete", self._names.get(physical_id, physical_id))
        self.live.pop(physical_id, None)

    def read(self, physical_id):
        return self.live.get(physical_id)


def make_snapshot(model: ResourceModel) -> Snapshot:
    """Snapshot as if `model` had been applied, with physical ids '<logical_id>-id'."""
    ids = {r.logical_id: f"{r.logical_id}-id" for r in model.all_resources()}
    snapshot = Snapshot()
    for resource in model.all_resources():
        doc = to_document(resource.properties)
        snapshot.put(
            SnapshotEntry(
                logical_id=resource.logical_id,
                kind=resource.kind,
                physical_id=ids[resource.logical_id],
                properties=doc,
                dependencies=tuple(resource.references()),
                applied=resolve_refs(doc, ids),
            )
        )
    return snapshot


def build_network(cidr="10.0.0.0/16", sg_description="web tier", memory=128):
    model = ResourceModel()
    model.declare("network", "vpc", {"name": "vpc", "cidr": cidr, "nat_gateways": 1})
    model.declare(
        "subnet",
        "subnet-a",
        {
            "name": "subnet-a",
            "network": Ref("vpc"),
            "cidr": "10.0.1.0/24",
            "availability_zone": "us-east-1a",
        },
    )
    model.declare(
        "security_group",
        "web-sg",
        {
            "name": "web-sg",
            "network": Ref("vpc"),
            "description": sg_description,
            "ingress": [{"protocol": "tcp", "port": 443, "cidr": "0.0.0.0/0"}],
        },
    )
    model.declare(
        "function",
        "fn",
        {
            "name": "fn",
            "memory": memory,
            "subnets": [Ref("subnet-a")],
            "security_groups": [Ref("web-sg")],
        },
    )
    return model


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry(default=provider)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state.json"


@pytest.fixture
def store(state_path):
    return StateStore(state_path, lock_timeout=0.2, poll_interval=0.01)
