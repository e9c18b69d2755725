"""Versioned JSON snapshot persistence with atomic writes and a run lock."""

import json
import logging
import os
import socket
import tempfile
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stackapply.errors import (
    ConcurrentRunError,
    CorruptStateError,
    UnsupportedStateVersionError,
)
from stackapply.models import Snapshot, SnapshotEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Upgraders from version N to N + 1, applied in sequence on load.
UPGRADERS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the target directory, fsync it, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as fh:
            json.dump(data, fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _entry_to_document(entry: SnapshotEntry) -> dict[str, Any]:
    return {
        "kind": entry.kind,
        "physical_id": entry.physical_id,
        "properties": entry.properties,
        "dependencies": list(entry.dependencies),
        "applied": entry.applied,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def _entry_from_document(path: str, logical_id: str, doc: Any) -> SnapshotEntry:
    if not isinstance(doc, dict):
        raise CorruptStateError(path, f"resource {logical_id!r} is not a mapping")
    kind = doc.get("kind")
    physical_id = doc.get("physical_id")
    properties = doc.get("properties", {})
    dependencies = doc.get("dependencies", [])
    applied = doc.get("applied", {})
    if not isinstance(kind, str) or not isinstance(physical_id, str):
        raise CorruptStateError(path, f"resource {logical_id!r} lacks kind or physical_id")
    if not isinstance(properties, dict) or not isinstance(applied, dict):
        raise CorruptStateError(path, f"resource {logical_id!r} has malformed properties")
    if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
        raise CorruptStateError(path, f"resource {logical_id!r} has malformed dependencies")
    updated_at = doc.get("updated_at")
    try:
        timestamp = datetime.fromisoformat(updated_at) if updated_at else None
    except (TypeError, ValueError) as exc:
        raise CorruptStateError(path, f"resource {logical_id!r} has a bad timestamp") from exc
    return SnapshotEntry(
        logical_id=logical_id,
        kind=kind,
        physical_id=physical_id,
        properties=properties,
        dependencies=tuple(dependencies),
        applied=applied,
        updated_at=timestamp,
    )


class StateStore:
    """Persists the last-applied snapshot to a JSON file."""

    def __init__(
        self,
        path: str | Path,
        lock_timeout: float = 10.0,
        poll_interval: float = 0.1,
    ):
        self.path = Path(path)
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._lock_timeout = lock_timeout
        self._poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        """True while this store instance holds the run lock."""
        return self._held

    def load(self) -> Snapshot:
        """Read the snapshot. A missing file is an empty snapshot; anything unreadable raises."""
        if not self.path.exists():
            return Snapshot()
        try:
            doc = json.loads(self.path.read_text())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptStateError(str(self.path), str(exc)) from exc
        if not isinstance(doc, dict):
            raise CorruptStateError(str(self.path), "top level is not a mapping")

        doc = self._upgrade(doc)
        resources = doc.get("resources")
        serial = doc.get("serial", 0)
        if not isinstance(resources, dict) or not isinstance(serial, int):
            raise CorruptStateError(str(self.path), "missing resources or serial")

        return Snapshot(
            entries={
                lid: _entry_from_document(str(self.path), lid, item)
                for lid, item in resources.items()
            },
            serial=serial,
            lineage=doc.get("lineage"),
        )

    def _upgrade(self, doc: dict[str, Any]) -> dict[str, Any]:
        version = doc.get("schema_version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise CorruptStateError(str(self.path), "missing schema_version")
        while version < SCHEMA_VERSION:
            upgrader = UPGRADERS.get(version)
            if upgrader is None:
                raise UnsupportedStateVersionError(str(self.path), version)
            logger.info("Upgrading state %s from schema %d", self.path, version)
            doc = upgrader(doc)
            version += 1
        if version != SCHEMA_VERSION:
            raise UnsupportedStateVersionError(str(self.path), version)
        return doc

    def save(self, snapshot: Snapshot) -> None:
        """Atomically replace the stored snapshot, bumping its serial."""
        snapshot.serial += 1
        if snapshot.lineage is None:
            snapshot.lineage = str(uuid.uuid4())
        write_json_atomic(
            self.path,
            {
                "schema_version": SCHEMA_VERSION,
                "serial": snapshot.serial,
                "lineage": snapshot.lineage,
                "resources": {
                    lid: _entry_to_document(entry) for lid, entry in snapshot.entries.items()
                },
            },
        )
        logger.info("Saved state %s serial %d", self.path, snapshot.serial)

    def lock(self, timeout: float | None = None) -> None:
        """Acquire the run lock, waiting at most `timeout` seconds.

        Raises ConcurrentRunError if another run still holds it.
        """
        timeout = self._lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise ConcurrentRunError(str(self.path), self.lock_holder()) from None
                time.sleep(self._poll_interval)
                continue
            with os.fdopen(fd, "w") as fh:
                json.dump(
                    {
                        "pid": os.getpid(),
                        "host": socket.gethostname(),
                        "acquired_at": datetime.now(UTC).isoformat(),
                    },
                    fh,
                )
            self._held = True
            logger.debug("Acquired lock %s", self.lock_path)
            return

    def unlock(self) -> None:
        if self._held:
            self.lock_path.unlink(missing_ok=True)
            self._held = False
            logger.debug("Released lock %s", self.lock_path)

    def force_unlock(self) -> str | None:
        """Remove a lock left behind by a crashed run. Returns the previous holder."""
        holder = self.lock_holder()
        self.lock_path.unlink(missing_ok=True)
        self._held = False
        return holder

    def lock_holder(self) -> str | None:
        try:
            info = json.loads(self.lock_path.read_text())
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(info, dict):
            return None
        return f"pid {info.get('pid')} on {info.get('host')} since {info.get('acquired_at')}"

    @contextmanager
    def locked(self, timeout: float | None = None) -> Iterator["StateStore"]:
        self.lock(timeout)
        try:
            yield self
        finally:
            self.unlock()
