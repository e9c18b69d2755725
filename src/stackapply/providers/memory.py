"""Simulated backend that keeps resources in memory, optionally persisted to JSON."""

import copy
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from stackapply.errors import ProviderError
from stackapply.kinds import KIND_SPECS
from stackapply.providers.base import ProviderRegistry
from stackapply.state import write_json_atomic

logger = logging.getLogger(__name__)

ID_PREFIXES: dict[str, str] = {
    "network": "vpc",
    "subnet": "subnet",
    "gateway_endpoint": "vpce",
    "security_group": "sg",
    "role": "role",
    "log_group": "lg",
    "function": "fn",
}


class SimulatedBackend:
    """Thread-safe store of live resources keyed by physical id."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._resources: dict[str, dict[str, Any]] = {}
        if self._path and self._path.exists():
            try:
                self._resources = json.loads(self._path.read_text())
            except (OSError, json.JSONDecodeError) as exc:
                raise ProviderError(f"Cannot read simulated backend {self._path}: {exc}") from exc

    def create(self, kind: str, prefix: str, properties: dict[str, Any]) -> str:
        physical_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._resources[physical_id] = {"kind": kind, "properties": copy.deepcopy(properties)}
            self._flush()
        logger.info("Created %s %s", kind, physical_id)
        return physical_id

    def update(self, physical_id: str, properties: dict[str, Any]) -> None:
        with self._lock:
            if physical_id not in self._resources:
                raise ProviderError(f"Resource {physical_id} does not exist")
            self._resources[physical_id]["properties"] = copy.deepcopy(properties)
            self._flush()

    def delete(self, physical_id: str) -> None:
        with self._lock:
            if self._resources.pop(physical_id, None) is not None:
                self._flush()

    def read(self, physical_id: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._resources.get(physical_id)
            return copy.deepcopy(item["properties"]) if item else None

    def __contains__(self, physical_id: object) -> bool:
        with self._lock:
            return physical_id in self._resources

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def _flush(self) -> None:
        if self._path:
            write_json_atomic(self._path, self._resources)


class InMemoryProvider:
    """Provider for one kind backed by a SimulatedBackend."""

    def __init__(self, kind: str, backend: SimulatedBackend | None = None):
        self.kind = kind
        self._backend = backend or SimulatedBackend()
        self._prefix = ID_PREFIXES.get(kind, kind.replace("_", "-"))

    def create(self, properties: dict[str, Any]) -> str:
        return self._backend.create(self.kind, self._prefix, properties)

    def update(self, physical_id: str, properties: dict[str, Any]) -> None:
        self._backend.update(physical_id, properties)

    def delete(self, physical_id: str) -> None:
        self._backend.delete(physical_id)

    def read(self, physical_id: str) -> dict[str, Any] | None:
        return self._backend.read(physical_id)


def simulated_registry(state_path: str | Path) -> ProviderRegistry:
    """Registry of simulated providers persisted beside the state file."""
    state_path = Path(state_path)
    backend = SimulatedBackend(state_path.with_name(f"{state_path.stem}.backend.json"))
    return ProviderRegistry({kind: InMemoryProvider(kind, backend) for kind in KIND_SPECS})
