"""Applies a ChangeSet through providers on a bounded worker pool."""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import Any, NamedTuple

from stackapply.errors import ChangeFailedError, ProviderError, TransientProviderError
from stackapply.graph import DependencyGraph
from stackapply.models import (
    Change,
    ChangeAction,
    ChangeResult,
    ChangeSet,
    ChangeStatus,
    ExecutionSummary,
    ReplaceStrategy,
    Snapshot,
    SnapshotEntry,
    resolve_refs,
)
from stackapply.providers.base import Provider, ProviderRegistry
from stackapply.resource_model import ResourceModel
from stackapply.state import StateStore

logger = logging.getLogger(__name__)


class _Step(NamedTuple):
    """A unit of work: a change's main operation, or deleting the old instance of a Replace."""

    logical_id: str
    retire: bool = False


class _Attempt:
    """A provider call running on its own daemon thread.

    A call that outlives its timeout keeps running; the caller waits on it
    again instead of issuing a second call.
    """

    def __init__(self, operation: Callable[..., Any], args: tuple[Any, ...]):
        self._outcome: dict[str, Any] = {}
        self._thread = threading.Thread(target=self._run, args=(operation, args), daemon=True)
        self._thread.start()

    def _run(self, operation: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            self._outcome["value"] = operation(*args)
        except BaseException as exc:
            self._outcome["error"] = exc

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def result(self, timeout: float) -> Any:
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TransientProviderError(f"operation timed out after {timeout}s")
        if "error" in self._outcome:
            raise self._outcome["error"]
        return self._outcome.get("value")


class PlanExecutor:
    """Executes changes in dependency order with retries, blocking and incremental saves."""

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore | None = None,
        max_concurrent: int = 5,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        timeout: float | None = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._providers = providers
        self._store = store
        self._max_concurrent = max_concurrent
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._timeout = timeout
        self._sleep = sleep
        self._snapshot_lock = threading.Lock()
        self._snapshot = Snapshot()
        self._attempts: dict[str, int] = {}
        self._old_kinds: dict[str, str] = {}

    def execute(
        self,
        change_set: ChangeSet,
        snapshot: Snapshot,
        model: ResourceModel | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionSummary:
        """Apply `change_set`, updating `snapshot` in place as changes succeed.

        Acquires the store's run lock unless the caller already holds it.
        """
        if self._store is not None and not self._store.held:
            with self._store.locked():
                return self._execute(change_set, snapshot, model, cancel_event)
        return self._execute(change_set, snapshot, model, cancel_event)

    def _execute(
        self,
        change_set: ChangeSet,
        snapshot: Snapshot,
        model: ResourceModel | None,
        cancel_event: threading.Event | None,
    ) -> ExecutionSummary:
        self._snapshot = snapshot
        self._attempts = {}
        self._old_kinds = {lid: entry.kind for lid, entry in snapshot.entries.items()}
        cancel_event = cancel_event or threading.Event()

        active = {c.logical_id: c for c in change_set if c.action != ChangeAction.NOOP}
        for change in active.values():
            self._providers_for(change)

        graph = self._step_graph(active)
        order = graph.topological_order()

        status = {step: ChangeStatus.PENDING for step in order}
        errors: dict[_Step, str] = {}
        physical_ids: dict[str, str | None] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=self._max_concurrent) as pool:
            futures: dict[Future, _Step] = {}
            while True:
                if cancel_event.is_set():
                    cancelled = True
                if not cancelled:
                    for step in order:
                        if status[step] == ChangeStatus.PENDING and all(
                            status[d] == ChangeStatus.SUCCEEDED for d in graph.dependencies(step)
                        ):
                            status[step] = ChangeStatus.IN_PROGRESS
                            change = active[step.logical_id]
                            if step.retire:
                                logger.info(
                                    "Deleting old instance %s of %s", change.physical_id, step.logical_id
                                )
                            else:
                                logger.info("Starting %s %s", change.action, step.logical_id)
                            futures[pool.submit(self._run_step, change, step.retire)] = step
                if not futures:
                    break

                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    step = futures.pop(future)
                    lid = step.logical_id
                    try:
                        result = future.result()
                    except ChangeFailedError as exc:
                        logger.error("%s", exc)
                        errors[step] = str(exc)
                    except Exception as exc:
                        logger.exception("Change for %s failed", lid)
                        errors[step] = f"{lid}: {exc}"

                    if step in errors:
                        status[step] = ChangeStatus.FAILED
                        if step.retire:
                            errors[step] += f" (old instance {active[lid].physical_id} was not deleted)"
                        for downstream in graph.descendants(step):
                            if status[downstream] == ChangeStatus.PENDING:
                                status[downstream] = ChangeStatus.BLOCKED
                                errors[downstream] = f"blocked by failed change {lid}"
                                logger.warning(
                                    "Blocking %s: upstream %s failed", downstream.logical_id, lid
                                )
                    else:
                        status[step] = ChangeStatus.SUCCEEDED
                        if step.retire:
                            continue
                        physical_ids[lid] = result
                        logger.info("Finished %s %s", active[lid].action, lid)
                        if model is not None and lid in model:
                            model.get(lid).physical_id = result

        for step, current in status.items():
            if current == ChangeStatus.PENDING:
                status[step] = ChangeStatus.BLOCKED
                errors[step] = "run cancelled" if cancelled else "dependencies never completed"

        if self._store is not None:
            with self._snapshot_lock:
                self._store.save(self._snapshot)

        results = []
        for change in change_set:
            lid = change.logical_id
            if change.action == ChangeAction.NOOP:
                results.append(
                    ChangeResult(
                        logical_id=lid,
                        action=change.action,
                        status=ChangeStatus.NOOP,
                        physical_id=change.physical_id,
                    )
                )
                continue
            steps = [s for s in (_Step(lid), _Step(lid, retire=True)) if s in status]
            outcome, error = self._merge_steps(steps, status, errors)
            results.append(
                ChangeResult(
                    logical_id=lid,
                    action=change.action,
                    status=outcome,
                    attempts=self._attempts.get(lid, 0),
                    physical_id=physical_ids.get(lid, change.physical_id),
                    error=error,
                )
            )
        summary = ExecutionSummary(results=tuple(results), cancelled=cancelled)
        logger.info(
            "Run finished: %s",
            ", ".join(f"{count} {state}" for state, count in summary.counts().items()),
        )
        return summary

    @staticmethod
    def _step_graph(active: dict[str, Change]) -> DependencyGraph[_Step]:
        """Order the steps so that no instance is deleted while something still references it.

        A Replace splits into its main step (create the new instance) and a
        retire step (delete the old one). The retire step waits for every
        snapshot resource that referenced the old instance to finish.
        """
        graph: DependencyGraph[_Step] = DependencyGraph()
        for lid, change in active.items():
            graph.add_node(_Step(lid))
            if change.action == ChangeAction.REPLACE:
                graph.add_node(_Step(lid, retire=True))

        def final(lid: str) -> _Step:
            return _Step(lid, retire=active[lid].action == ChangeAction.REPLACE)

        for lid, change in active.items():
            main = _Step(lid)
            if change.action == ChangeAction.DELETE:
                # depends_on of a Delete lists the snapshot resources referencing it.
                for dependent in change.depends_on:
                    if dependent in active:
                        graph.add_edge(main, final(dependent))
                continue

            for upstream in change.depends_on:
                if upstream in active:
                    graph.add_edge(main, _Step(upstream))

            if change.action == ChangeAction.REPLACE:
                retire = _Step(lid, retire=True)
                if change.strategy == ReplaceStrategy.CREATE_BEFORE_DELETE:
                    graph.add_edge(retire, main)
                else:
                    graph.add_edge(main, retire)
                for dependent in change.old_dependents:
                    if dependent in active and dependent != lid:
                        graph.add_edge(retire, final(dependent))
        return graph

    @staticmethod
    def _merge_steps(
        steps: list[_Step],
        status: dict[_Step, ChangeStatus],
        errors: dict[_Step, str],
    ) -> tuple[ChangeStatus, str | None]:
        for wanted in (ChangeStatus.FAILED, ChangeStatus.BLOCKED):
            for step in steps:
                if status[step] == wanted:
                    return wanted, errors.get(step)
        return ChangeStatus.SUCCEEDED, None

    def _providers_for(self, change: Change) -> tuple[Provider, Provider | None]:
        """Provider for the desired kind and, if something exists already, for the old kind."""
        new = self._providers.for_kind(change.kind, change.logical_id)
        old_kind = self._old_kinds.get(change.logical_id)
        old = None
        if old_kind is not None:
            old = self._providers.for_kind(old_kind, change.logical_id)
        return new, old

    def _run_step(self, change: Change, retire: bool) -> str | None:
        """Run one step to completion. Returns the resulting physical id."""
        provider, old_provider = self._providers_for(change)
        lid = change.logical_id

        if retire:
            self._call(lid, old_provider.delete, change.physical_id)
            if change.strategy != ReplaceStrategy.CREATE_BEFORE_DELETE:
                self._forget(lid)
            return None

        if change.action == ChangeAction.DELETE:
            self._call(lid, old_provider.delete, change.physical_id)
            self._forget(lid)
            return None

        if change.action == ChangeAction.UPDATE:
            properties = self._resolve(change)
            self._call(lid, provider.update, change.physical_id, properties)
            self._record(change, change.physical_id, properties)
            return change.physical_id

        properties = self._resolve(change)
        physical_id = self._call(lid, provider.create, properties)
        self._record(change, physical_id, properties)
        return physical_id

    def _resolve(self, change: Change) -> dict[str, Any]:
        with self._snapshot_lock:
            physical_ids = self._snapshot.physical_ids()
        try:
            return resolve_refs(change.after or {}, physical_ids)
        except KeyError as exc:
            raise ProviderError(f"reference {exc.args[0]!r} has no physical id") from None

    def _call(self, logical_id: str, operation: Callable[..., Any], *args: Any) -> Any:
        """Call a provider operation with per-attempt timeout and exponential backoff.

        After a timeout the same call is awaited again while it is still
        running, so one operation never has two calls in flight.
        """
        attempt_call: _Attempt | None = None
        for attempt in range(1, self._max_attempts + 1):
            self._attempts[logical_id] = self._attempts.get(logical_id, 0) + 1
            try:
                if self._timeout is None:
                    return operation(*args)
                if attempt_call is None:
                    attempt_call = _Attempt(operation, args)
                else:
                    logger.debug("%s: waiting on the call still in flight", logical_id)
                return attempt_call.result(self._timeout)
            except TransientProviderError as exc:
                if attempt_call is not None and not attempt_call.running:
                    attempt_call = None
                if attempt == self._max_attempts:
                    if attempt_call is not None:
                        logger.warning(
                            "%s: giving up while a call is still running; its result will be lost",
                            logical_id,
                        )
                    raise ChangeFailedError(logical_id, attempt, exc) from exc
                delay = min(self._backoff_base * 2 ** (attempt - 1), self._backoff_max)
                logger.warning(
                    "%s: transient failure (attempt %d/%d), retrying in %.1fs: %s",
                    logical_id,
                    attempt,
                    self._max_attempts,
                    delay,
                    exc,
                )
                if delay > 0:
                    self._sleep(delay)
        raise AssertionError("unreachable")

    def _record(self, change: Change, physical_id: str, applied: dict[str, Any]) -> None:
        entry = SnapshotEntry(
            logical_id=change.logical_id,
            kind=change.kind,
            physical_id=physical_id,
            properties=change.after or {},
            dependencies=change.depends_on,
            applied=applied,
            updated_at=datetime.now(UTC),
        )
        with self._snapshot_lock:
            self._snapshot.put(entry)
            if self._store is not None:
                self._store.save(self._snapshot)

    def _forget(self, logical_id: str) -> None:
        with self._snapshot_lock:
            self._snapshot.remove(logical_id)
            if self._store is not None:
                self._store.save(self._snapshot)
