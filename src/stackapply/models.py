"""Core data models for declarative provisioning."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ChangeAction(StrEnum):
    """What the diff decided to do with a resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


class ChangeStatus(StrEnum):
    """Lifecycle state of a change during execution."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    NOOP = "noop"


class ReplaceStrategy(StrEnum):
    """Order of the two halves of a replacement."""

    DELETE_BEFORE_CREATE = "delete_before_create"
    CREATE_BEFORE_DELETE = "create_before_delete"


class ResourceStatus(StrEnum):
    """Drift status of a single live resource."""

    IN_SYNC = "IN_SYNC"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    NOT_CHECKED = "NOT_CHECKED"


@dataclass(frozen=True)
class Ref:
    """Marks a property value as "the physical identifier of resource `logical_id`"."""

    logical_id: str

    def __str__(self) -> str:
        return f"!Ref {self.logical_id}"


def to_document(value: Any) -> Any:
    """Convert a property value into its JSON form, with refs as {"Ref": id}."""
    if isinstance(value, Ref):
        return {"Ref": value.logical_id}
    if isinstance(value, Mapping):
        return {str(k): to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document(v) for v in value]
    return value


def from_document(value: Any) -> Any:
    """Inverse of to_document: turn {"Ref": id} mappings back into Ref markers."""
    if isinstance(value, Mapping):
        if len(value) == 1 and isinstance(value.get("Ref"), str):
            return Ref(value["Ref"])
        return {k: from_document(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_document(v) for v in value]
    return value


def iter_refs(value: Any) -> Iterator[str]:
    """Yield referenced logical ids in the order they appear in a property value."""
    if isinstance(value, Ref):
        yield value.logical_id
    elif isinstance(value, Mapping):
        if len(value) == 1 and isinstance(value.get("Ref"), str):
            yield value["Ref"]
            return
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_refs(v)


def resolve_refs(value: Any, physical_ids: Mapping[str, str]) -> Any:
    """Replace every Ref with the physical identifier it points to.

    Raises KeyError when a referenced resource has no physical identifier yet.
    """
    if isinstance(value, Ref):
        return physical_ids[value.logical_id]
    if isinstance(value, Mapping):
        if len(value) == 1 and isinstance(value.get("Ref"), str):
            return physical_ids[value["Ref"]]
        return {k: resolve_refs(v, physical_ids) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_refs(v, physical_ids) for v in value]
    return value


@dataclass
class Resource:
    """A declared infrastructure object."""

    kind: str
    logical_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    physical_id: str | None = None

    def references(self) -> list[str]:
        """Logical ids this resource requires, explicit ones first, without duplicates."""
        seen: dict[str, None] = {}
        for target in self.depends_on:
            seen.setdefault(target, None)
        for target in iter_refs(self.properties):
            seen.setdefault(target, None)
        return list(seen)


@dataclass(frozen=True)
class PropertyDiff:
    """A single property difference between last-applied and desired configuration."""

    path: str
    before: Any
    after: Any
    requires_replace: bool = False


@dataclass(frozen=True)
class Change:
    """The planned action for one logical id."""

    logical_id: str
    kind: str
    action: ChangeAction
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    property_diffs: tuple[PropertyDiff, ...] = ()
    physical_id: str | None = None
    depends_on: tuple[str, ...] = ()
    strategy: ReplaceStrategy | None = None
    reason: str | None = None
    # Snapshot resources still referencing the old instance of a Replace.
    old_dependents: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeSet:
    """An ordered list of changes produced by the diff engine."""

    changes: tuple[Change, ...]

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, logical_id: str) -> Change | None:
        for change in self.changes:
            if change.logical_id == logical_id:
                return change
        return None

    def counts(self) -> dict[ChangeAction, int]:
        counts = {action: 0 for action in ChangeAction}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NOOP for c in self.changes)


@dataclass(frozen=True)
class SnapshotEntry:
    """Last-known state of one resource.

    `properties` holds the declared properties in document form (refs as
    {"Ref": id}); `applied` holds what was actually sent to the provider.
    """

    logical_id: str
    kind: str
    physical_id: str
    properties: dict[str, Any]
    dependencies: tuple[str, ...] = ()
    applied: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass
class Snapshot:
    """Ordered mapping from logical id to last-known resource state."""

    entries: dict[str, SnapshotEntry] = field(default_factory=dict)
    serial: int = 0
    lineage: str | None = None

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, logical_id: str) -> SnapshotEntry | None:
        return self.entries.get(logical_id)

    def put(self, entry: SnapshotEntry) -> None:
        self.entries[entry.logical_id] = entry

    def remove(self, logical_id: str) -> None:
        self.entries.pop(logical_id, None)

    def physical_ids(self) -> dict[str, str]:
        return {lid: e.physical_id for lid, e in self.entries.items()}


@dataclass(frozen=True)
class ChangeResult:
    """Outcome of one change after a run."""

    logical_id: str
    action: ChangeAction
    status: ChangeStatus
    attempts: int = 0
    physical_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ExecutionSummary:
    """Outcome of a plan execution."""

    results: tuple[ChangeResult, ...]
    cancelled: bool = False

    def by_status(self, status: ChangeStatus) -> list[ChangeResult]:
        return [r for r in self.results if r.status == status]

    def status_of(self, logical_id: str) -> ChangeStatus | None:
        for result in self.results:
            if result.logical_id == logical_id:
                return result.status
        return None

    def counts(self) -> dict[ChangeStatus, int]:
        counts = {
            status: 0
            for status in (
                ChangeStatus.SUCCEEDED,
                ChangeStatus.FAILED,
                ChangeStatus.BLOCKED,
                ChangeStatus.NOOP,
            )
        }
        for result in self.results:
            counts[result.status] = counts.get(result.status, 0) + 1
        return counts

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(
            r.status in (ChangeStatus.SUCCEEDED, ChangeStatus.NOOP) for r in self.results
        )


@dataclass(frozen=True)
class ResourceDrift:
    """Drift information for a single resource in the snapshot."""

    logical_id: str
    physical_id: str
    kind: str
    status: ResourceStatus
    property_diffs: list[PropertyDiff]
    timestamp: datetime
