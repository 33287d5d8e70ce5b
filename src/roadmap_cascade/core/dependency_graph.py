"""
Dependency Graph for Roadmap Cascade

In-memory view of work items and their dependency edges. The graph is
derived from the StateStore and rebuilt, not patched, between batches.

Provides:
- Atomic check-then-add of items and edges (cycles and dangling edges fail
  before anything is mutated)
- Ready-set computation against a phase gate
- Deterministic topological order and parallel execution batches
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable

from .errors import GraphError
from .models import PhaseStatus, WorkItem
from .phases import PhaseGate

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Work items keyed by id, kept in insertion order."""

    def __init__(self):
        self._items: dict[str, WorkItem] = {}
        self._order: dict[str, int] = {}

    @classmethod
    def from_items(cls, items: Iterable[WorkItem]) -> "DependencyGraph":
        """
        Build a graph from persisted items, validating all of them at once.

        Items are added in ``sequence`` order so tie-breaking matches the
        order the roadmap originally declared them in.

        Raises:
            GraphError: Listing every duplicate id, dangling dependency and cycle
        """
        ordered = sorted(items, key=lambda i: i.sequence)
        graph = cls()
        problems: list[str] = []
        ids = set()

        for item in ordered:
            if item.id in ids:
                problems.append(f"Duplicate work item id: {item.id}")
                continue
            ids.add(item.id)
            graph._insert(item)

        for item in ordered:
            for dep in item.dependencies:
                if dep not in ids:
                    problems.append(f"Work item '{item.id}': unknown dependency '{dep}'")

        cycle = None
        if not problems:
            cycle = graph.detect_cycle()
            if cycle:
                problems.append(f"Circular dependency detected: {' -> '.join(cycle)}")

        if problems:
            raise GraphError(problems[0], problems=problems, cycle=cycle)
        return graph

    def _insert(self, item: WorkItem) -> None:
        self._order[item.id] = len(self._order)
        self._items[item.id] = item

    # ========== Mutation ==========

    def add_item(self, item: WorkItem) -> None:
        """
        Add a work item.

        Raises:
            GraphError: If the id exists, a dependency is unknown, or a cycle would form.
                The graph is left unchanged.
        """
        if item.id in self._items:
            raise GraphError(f"Duplicate work item id: {item.id}")
        for dep in item.dependencies:
            if dep not in self._items:
                raise GraphError(f"Work item '{item.id}': unknown dependency '{dep}'")

        cycle = self.detect_cycle(extra_edges={item.id: list(item.dependencies)})
        if cycle:
            raise GraphError(f"Circular dependency detected: {' -> '.join(cycle)}", cycle=cycle)

        self._insert(item)
        logger.debug("Added work item %s (deps=%s)", item.id, item.dependencies)

    def add_dependency(self, item_id: str, dependency_id: str) -> None:
        """
        Add an edge ``item_id`` depends on ``dependency_id``.

        Raises:
            GraphError: If either id is unknown or the edge would form a cycle.
        """
        item = self.get(item_id)
        if dependency_id not in self._items:
            raise GraphError(f"Work item '{item_id}': unknown dependency '{dependency_id}'")
        if dependency_id in item.dependencies:
            return

        cycle = self.would_create_cycle(item_id, dependency_id)
        if cycle:
            raise GraphError(f"Circular dependency detected: {' -> '.join(cycle)}", cycle=cycle)
        item.dependencies.append(dependency_id)

    def would_create_cycle(self, item_id: str, dependency_id: str) -> list[str] | None:
        """Return the cycle an extra edge would create, or None."""
        if item_id == dependency_id:
            return [item_id, item_id]
        extra = {item_id: list(self.get(item_id).dependencies) + [dependency_id]}
        return self.detect_cycle(extra_edges=extra)

    # ========== Queries ==========

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: str) -> WorkItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise GraphError(f"Unknown work item: {item_id}") from None

    def items(self) -> list[WorkItem]:
        return list(self._items.values())

    def ids(self) -> list[str]:
        return list(self._items)

    def descendants(self, item_ids: Iterable[str]) -> set[str]:
        """All items that transitively depend on any of ``item_ids``."""
        reverse: dict[str, list[str]] = {iid: [] for iid in self._items}
        for item in self._items.values():
            for dep in item.dependencies:
                if dep in reverse:
                    reverse[dep].append(item.id)

        seen: set[str] = set()
        stack = [i for i in item_ids if i in reverse]
        while stack:
            current = stack.pop()
            for child in reverse[current]:
                if child not in seen:
                    seen.add(child)
                    stack.append(child)
        return seen

    def ancestors(self, item_id: str) -> set[str]:
        """All items ``item_id`` transitively depends on."""
        seen: set[str] = set()
        stack = list(self.get(item_id).dependencies)
        while stack:
            current = stack.pop()
            if current in seen or current not in self._items:
                continue
            seen.add(current)
            stack.extend(self._items[current].dependencies)
        return seen

    def depends_on(self, item_id: str, other_id: str) -> bool:
        return other_id in self.ancestors(item_id)

    def detect_cycle(self, extra_edges: dict[str, list[str]] | None = None) -> list[str] | None:
        """
        Detect a cycle over the dependency edges.

        Args:
            extra_edges: Candidate edge lists that replace an item's dependencies
                (or add a new item) for the purpose of the check only

        Returns:
            List of item ids forming a cycle, or None if the graph is acyclic
        """
        edges: dict[str, list[str]] = {iid: list(i.dependencies) for iid, i in self._items.items()}
        if extra_edges:
            for iid, deps in extra_edges.items():
                edges[iid] = list(deps)

        WHITE, GRAY, BLACK = 0, 1, 2
        color = {iid: WHITE for iid in edges}

        for root in edges:
            if color[root] != WHITE:
                continue
            color[root] = GRAY
            path = [root]
            pending = [iter(edges[root])]
            while pending:
                for dep in pending[-1]:
                    if dep not in color or color[dep] == BLACK:
                        continue
                    if color[dep] == GRAY:
                        # path holds the DFS stack from the root down to the current node
                        return path[path.index(dep):] + [dep]
                    color[dep] = GRAY
                    path.append(dep)
                    pending.append(iter(edges[dep]))
                    break
                else:
                    color[path.pop()] = BLACK
                    pending.pop()
        return None

    # ========== Scheduling ==========

    def _sort_key(self, item: WorkItem) -> tuple[int, int]:
        return (-item.priority, self._order[item.id])

    def dependency_satisfied(self, dependency_id: str, threshold: PhaseStatus) -> bool:
        dep = self._items.get(dependency_id)
        if dep is None:
            return False
        if not dep.active:
            return True
        return dep.effective_status.at_least(threshold)

    def compute_ready_set(
        self,
        gate: PhaseGate,
        halted: set[str] | None = None,
        scope: Iterable[str] | None = None,
    ) -> list[WorkItem]:
        """
        Compute the items that may enter a phase now.

        An item is ready when it is active, not blocked, not halted, its
        effective status is admitted by the gate, and every dependency has
        reached the gate's threshold.

        Args:
            gate: Phase gate to evaluate
            halted: Items held back by pending high/critical drift
            scope: Optional subset of item ids to consider

        Returns:
            Ready items ordered by descending priority, then insertion order
        """
        halted = halted or set()
        allowed = set(scope) if scope is not None else None
        ready: list[WorkItem] = []

        for item in self._items.values():
            if allowed is not None and item.id not in allowed:
                continue
            if not item.active or item.is_blocked or item.id in halted:
                continue
            if not gate.admits(item.effective_status):
                continue
            if all(self.dependency_satisfied(d, gate.dependency_threshold) for d in item.dependencies):
                ready.append(item)

        ready.sort(key=self._sort_key)
        return ready

    def topological_order(self, extra_edges: list[tuple[str, str]] | None = None) -> list[str]:
        """
        Deterministic topological order (dependencies first).

        Ties are broken by descending priority, then insertion order.

        Args:
            extra_edges: Additional (item, dependency) edges to honor

        Raises:
            GraphError: If the edges contain a cycle
        """
        deps: dict[str, set[str]] = {iid: set(i.dependencies) & set(self._items) for iid, i in self._items.items()}
        for item_id, dep_id in extra_edges or []:
            if item_id in deps and dep_id in self._items:
                deps[item_id].add(dep_id)

        reverse: dict[str, list[str]] = {iid: [] for iid in deps}
        for iid, ds in deps.items():
            for d in ds:
                reverse[d].append(iid)

        remaining = {iid: len(ds) for iid, ds in deps.items()}
        heap = [(self._sort_key(self._items[iid]), iid) for iid, n in remaining.items() if n == 0]
        heapq.heapify(heap)
        order: list[str] = []

        while heap:
            _, iid = heapq.heappop(heap)
            order.append(iid)
            for child in reverse[iid]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(heap, (self._sort_key(self._items[child]), child))

        if len(order) != len(deps):
            stuck = [iid for iid in deps if iid not in order]
            raise GraphError(f"Circular dependency among: {', '.join(stuck)}")
        return order

    def execution_batches(self) -> list[list[str]]:
        """
        Group items into batches that can run in parallel.

        Items with no dependencies form the first batch; each later batch
        holds the items whose dependencies all sit in earlier batches.
        """
        placed: set[str] = set()
        batches: list[list[str]] = []
        pending = [i for i in self._items.values()]

        while pending:
            ready = [
                i for i in pending
                if all(d in placed or d not in self._items for d in i.dependencies)
            ]
            if not ready:
                raise GraphError(f"Could not resolve dependencies for: {[i.id for i in pending]}")
            ready.sort(key=self._sort_key)
            batches.append([i.id for i in ready])
            placed.update(i.id for i in ready)
            pending = [i for i in pending if i.id not in placed]

        return batches
