"""Dependency graph construction, cycle detection and topological ordering."""

import heapq
import logging
from collections.abc import Hashable, Iterable, Iterator
from enum import IntEnum
from typing import Generic, TypeVar

from stackapply.errors import CyclicDependencyError, UnknownResourceError
from stackapply.resource_model import ResourceModel

logger = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)


class _Mark(IntEnum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


class DependencyGraph(Generic[N]):
    """A directed graph where an edge `node -> dependency` means "node requires dependency".

    Nodes remember insertion order, which breaks ties in `topological_order()`.
    """

    def __init__(self, nodes: Iterable[N] = ()):
        self._index: dict[N, int] = {}
        self._deps: dict[N, list[N]] = {}
        self._dependents: dict[N, list[N]] = {}
        for node in nodes:
            self.add_node(node)

    def add_node(self, node: N) -> None:
        if node not in self._index:
            self._index[node] = len(self._index)
            self._deps[node] = []
            self._dependents[node] = []

    def add_edge(self, node: N, dependency: N) -> None:
        """Record that `node` requires `dependency`. Both must already be nodes."""
        if dependency not in self._deps[node]:
            self._deps[node].append(dependency)
            self._dependents[dependency].append(node)

    @property
    def nodes(self) -> list[N]:
        return list(self._index)

    def __contains__(self, node: object) -> bool:
        return node in self._index

    def __len__(self) -> int:
        return len(self._index)

    def dependencies(self, node: N) -> list[N]:
        return list(self._deps[node])

    def dependents(self, node: N) -> list[N]:
        return list(self._dependents[node])

    def descendants(self, node: N) -> set[N]:
        """Every node that transitively requires `node`."""
        seen: set[N] = set()
        stack = list(self._dependents[node])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def find_cycle(self) -> list[N] | None:
        """Return the members of one cycle in traversal order, or None if acyclic."""
        marks = {node: _Mark.UNVISITED for node in self._index}

        for root in self._index:
            if marks[root] != _Mark.UNVISITED:
                continue
            path: list[N] = [root]
            iterators: list[Iterator[N]] = [iter(self._deps[root])]
            marks[root] = _Mark.IN_PROGRESS
            while iterators:
                nxt = next(iterators[-1], None)
                if nxt is None:
                    marks[path.pop()] = _Mark.DONE
                    iterators.pop()
                elif marks[nxt] == _Mark.IN_PROGRESS:
                    return path[path.index(nxt):]
                elif marks[nxt] == _Mark.UNVISITED:
                    marks[nxt] = _Mark.IN_PROGRESS
                    path.append(nxt)
                    iterators.append(iter(self._deps[nxt]))
        return None

    def topological_order(self) -> list[N]:
        """Dependencies before dependents; ties broken by insertion order.

        Raises CyclicDependencyError naming the cycle members.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError([str(n) for n in cycle])

        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [(self._index[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[N] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._index[dependent], dependent))
        return order


def build_graph(model: ResourceModel) -> DependencyGraph[str]:
    """Build the reference graph of a model. Raises on unknown targets or cycles."""
    graph: DependencyGraph[str] = DependencyGraph(r.logical_id for r in model.all_resources())
    for resource in model.all_resources():
        for target in resource.references():
            if target not in graph:
                raise UnknownResourceError(target, referenced_by=resource.logical_id)
            graph.add_edge(resource.logical_id, target)
    logger.debug("Built dependency graph with %d nodes", len(graph))
    graph.topological_order()
    return graph
