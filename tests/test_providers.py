"""Tests for the provider registry and the simulated backend."""

import json

import pytest

from stackapply.errors import ProviderError, UnknownKindError
from stackapply.kinds import KIND_SPECS
from stackapply.providers import (
    InMemoryProvider,
    Provider,
    ProviderRegistry,
    SimulatedBackend,
    simulated_registry,
)


def test_in_memory_provider_lifecycle():
    provider = InMemoryProvider("security_group")

    physical_id = provider.create({"name": "web", "port": 443})
    assert physical_id.startswith("sg-")
    assert provider.read(physical_id) == {"name": "web", "port": 443}

    provider.update(physical_id, {"name": "web", "port": 8443})
    assert provider.read(physical_id)["port"] == 8443

    provider.delete(physical_id)
    assert provider.read(physical_id) is None


def test_delete_is_idempotent():
    provider = InMemoryProvider("network")
    physical_id = provider.create({"cidr": "10.0.0.0/16"})

    provider.delete(physical_id)
    provider.delete(physical_id)

    assert provider.read(physical_id) is None


def test_update_of_missing_resource_raises():
    with pytest.raises(ProviderError):
        InMemoryProvider("network").update("vpc-missing", {})


def test_read_returns_a_copy():
    provider = InMemoryProvider("subnet")
    physical_id = provider.create({"tags": {"env": "dev"}})

    provider.read(physical_id)["tags"]["env"] = "prod"

    assert provider.read(physical_id) == {"tags": {"env": "dev"}}


def test_unlisted_kind_uses_kind_as_prefix():
    assert InMemoryProvider("nat_gateway").create({}).startswith("nat-gateway-")


def test_backend_persists_between_instances(tmp_path):
    path = tmp_path / "backend.json"
    first = SimulatedBackend(path)
    physical_id = first.create("network", "vpc", {"cidr": "10.0.0.0/16"})

    second = SimulatedBackend(path)

    assert physical_id in second
    assert second.read(physical_id) == {"cidr": "10.0.0.0/16"}
    assert json.loads(path.read_text())[physical_id]["kind"] == "network"


def test_corrupt_backend_file_raises(tmp_path):
    path = tmp_path / "backend.json"
    path.write_text("{nope")

    with pytest.raises(ProviderError):
        SimulatedBackend(path)


def test_registry_lookup_and_default():
    sg = InMemoryProvider("security_group")
    fallback = InMemoryProvider("anything")
    registry = ProviderRegistry({"security_group": sg})

    assert registry.for_kind("security_group") is sg
    with pytest.raises(UnknownKindError) as excinfo:
        registry.for_kind("queue", "jobs")
    assert "jobs" in str(excinfo.value)

    registry = ProviderRegistry({"security_group": sg}, default=fallback)
    assert registry.for_kind("queue") is fallback


def test_in_memory_provider_satisfies_protocol():
    assert isinstance(InMemoryProvider("network"), Provider)


def test_simulated_registry_covers_known_kinds(tmp_path):
    state_path = tmp_path / "prod.state.json"

    registry = simulated_registry(state_path)
    physical_id = registry.for_kind("function").create({"name": "fn"})

    assert sorted(registry.kinds()) == sorted(KIND_SPECS)
    assert (tmp_path / "prod.state.backend.json").exists()
    assert registry.for_kind("role").read(physical_id) == {"name": "fn"}
