"""Compares the desired model against the last snapshot and plans changes."""

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any

from stackapply.graph import DependencyGraph, build_graph
from stackapply.kinds import KindSpec, kind_spec
from stackapply.models import (
    Change,
    ChangeAction,
    ChangeSet,
    PropertyDiff,
    ReplaceStrategy,
    Snapshot,
    iter_refs,
    to_document,
)
from stackapply.resource_model import ResourceModel

logger = logging.getLogger(__name__)

KNOWN_AFTER_APPLY = "(known after apply)"

_MISSING = object()


def diff_properties(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    spec: KindSpec,
) -> list[PropertyDiff]:
    """Field-by-field comparison of two property mappings in document form.

    Nested mappings are compared recursively and reported with dotted paths;
    replacement is decided by the top-level property.
    """
    diffs: list[PropertyDiff] = []
    for key in [*after, *(k for k in before if k not in after)]:
        _diff_value(
            key,
            before.get(key, _MISSING),
            after.get(key, _MISSING),
            spec.is_immutable(key),
            diffs,
        )
    return diffs


def _diff_value(path: str, old: Any, new: Any, immutable: bool, out: list[PropertyDiff]) -> None:
    if old == new:
        return
    if isinstance(old, dict) and isinstance(new, dict):
        for key in [*new, *(k for k in old if k not in new)]:
            _diff_value(
                f"{path}.{key}",
                old.get(key, _MISSING),
                new.get(key, _MISSING),
                immutable,
                out,
            )
        return
    out.append(
        PropertyDiff(
            path=path,
            before=None if old is _MISSING else old,
            after=None if new is _MISSING else new,
            requires_replace=immutable,
        )
    )


class DiffEngine:
    """Produces an ordered ChangeSet from a model and a snapshot."""

    def __init__(self, kinds: Mapping[str, KindSpec] | None = None):
        self._kinds = kinds

    def diff(self, model: ResourceModel, snapshot: Snapshot) -> ChangeSet:
        graph = build_graph(model)
        changes: list[Change] = []
        replaced: set[str] = set()
        # Resources whose inputs change because something upstream is replaced.
        tainted: set[str] = set()

        for logical_id in graph.topological_order():
            change = self._diff_resource(model, snapshot, graph, logical_id, replaced, tainted)
            if change.action == ChangeAction.REPLACE:
                replaced.add(logical_id)
            if logical_id in replaced or any(d in tainted for d in change.depends_on):
                tainted.add(logical_id)
            changes.append(change)

        changes = self._sequence_replacements(changes, snapshot)
        changes.extend(self._plan_deletes(model, snapshot))

        change_set = ChangeSet(tuple(changes))
        logger.info(
            "Planned %s",
            ", ".join(f"{count} {action}" for action, count in change_set.counts().items()),
        )
        return change_set

    def _diff_resource(
        self,
        model: ResourceModel,
        snapshot: Snapshot,
        graph: DependencyGraph[str],
        logical_id: str,
        replaced: set[str],
        tainted: set[str],
    ) -> Change:
        resource = model.get(logical_id)
        spec = kind_spec(resource.kind, self._kinds)
        desired = to_document(resource.properties)
        depends_on = tuple(graph.dependencies(logical_id))
        entry = snapshot.get(logical_id)

        if entry is None:
            return Change(
                logical_id=logical_id,
                kind=resource.kind,
                action=ChangeAction.CREATE,
                after=desired,
                property_diffs=tuple(diff_properties({}, desired, KindSpec(resource.kind))),
                depends_on=depends_on,
            )

        diffs = diff_properties(entry.properties, desired, spec)
        reason = None
        if entry.kind != resource.kind:
            action = ChangeAction.REPLACE
            reason = f"kind changed from {entry.kind} to {resource.kind}"
        elif any(d.requires_replace for d in diffs):
            action = ChangeAction.REPLACE
        elif diffs:
            action = ChangeAction.UPDATE
        elif set(entry.dependencies) != set(depends_on):
            action = ChangeAction.UPDATE
            reason = "dependencies changed"
        else:
            action = ChangeAction.NOOP

        # Substitute a provisional identifier for every replaced dependency and
        # re-evaluate the fields that carry it.
        changed_props = {d.path.split(".", 1)[0] for d in diffs}
        for prop, value in desired.items():
            hits = [target for target in iter_refs(value) if target in replaced]
            if not hits or prop in changed_props:
                continue
            immutable = spec.is_immutable(prop)
            diffs.append(
                PropertyDiff(
                    path=prop,
                    before=entry.applied.get(prop, value),
                    after=KNOWN_AFTER_APPLY,
                    requires_replace=immutable,
                )
            )
            if immutable and action != ChangeAction.REPLACE:
                action = ChangeAction.REPLACE
                reason = f"{prop} references replaced resource {hits[0]}"

        upstream = [d for d in depends_on if d in tainted]
        if upstream and action in (ChangeAction.NOOP, ChangeAction.UPDATE) and reason is None:
            if action == ChangeAction.NOOP:
                action = ChangeAction.UPDATE
            if upstream[0] in replaced:
                reason = f"dependency {upstream[0]} is replaced"
            else:
                reason = f"dependency {upstream[0]} is affected by a replacement"

        return Change(
            logical_id=logical_id,
            kind=resource.kind,
            action=action,
            before=entry.properties,
            after=desired,
            property_diffs=tuple(diffs),
            physical_id=entry.physical_id,
            depends_on=depends_on,
            strategy=spec.strategy if action == ChangeAction.REPLACE else None,
            reason=reason,
        )

    def _sequence_replacements(self, changes: list[Change], snapshot: Snapshot) -> list[Change]:
        """Record who references each replaced instance and settle its strategy.

        The old instance of a Replace is deleted only after every snapshot
        resource referencing it has moved off or gone. A referencer that
        survives the run (an Update, or a create-before-delete Replace) needs
        the new instance first, so its dependency is replaced create-before-delete.
        """
        old_dependents: dict[str, list[str]] = {}
        for entry in snapshot.entries.values():
            for target in entry.dependencies:
                old_dependents.setdefault(target, []).append(entry.logical_id)

        by_id = {c.logical_id: c for c in changes}
        # Dependents come later in topological order, so they are settled first.
        for change in reversed(changes):
            if change.action != ChangeAction.REPLACE:
                continue
            referencers = tuple(old_dependents.get(change.logical_id, ()))
            strategy, reason = change.strategy, change.reason
            if strategy == ReplaceStrategy.DELETE_BEFORE_CREATE:
                for lid in referencers:
                    dependent = by_id.get(lid)
                    if dependent is None or change.logical_id not in dependent.depends_on:
                        continue
                    if dependent.action == ChangeAction.UPDATE or (
                        dependent.action == ChangeAction.REPLACE
                        and dependent.strategy == ReplaceStrategy.CREATE_BEFORE_DELETE
                    ):
                        strategy = ReplaceStrategy.CREATE_BEFORE_DELETE
                        reason = reason or f"created before delete so {lid} can move to it"
                        logger.debug("Replacing %s create-before-delete for %s", change.logical_id, lid)
                        break
            by_id[change.logical_id] = dataclasses.replace(
                change, strategy=strategy, reason=reason, old_dependents=referencers
            )
        return [by_id[c.logical_id] for c in changes]

    def _plan_deletes(self, model: ResourceModel, snapshot: Snapshot) -> list[Change]:
        """Deletes in reverse topological order of the snapshot's own dependencies."""
        graph: DependencyGraph[str] = DependencyGraph(snapshot.entries)
        for entry in snapshot.entries.values():
            for target in entry.dependencies:
                if target in graph:
                    graph.add_edge(entry.logical_id, target)

        deletes = []
        for logical_id in reversed(graph.topological_order()):
            if logical_id in model:
                continue
            entry = snapshot.entries[logical_id]
            deletes.append(
                Change(
                    logical_id=logical_id,
                    kind=entry.kind,
                    action=ChangeAction.DELETE,
                    before=entry.properties,
                    physical_id=entry.physical_id,
                    depends_on=tuple(graph.dependents(logical_id)),
                )
            )
        return deletes
