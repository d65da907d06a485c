"""Readiness of work items given a dependency graph and a completion oracle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from agent_foundry.deps.graph import DependencyGraph, WorkItem, WorkItemStatus, build_graph, node_sort_key

logger = logging.getLogger(__name__)


class CompletionOracle(Protocol):
    """Answers whether a referenced work item is done.

    ``is_completed`` means merged/closed as done; ``exists`` only means the
    item is known. Cross-repository references are checked with ``exists``
    unless strict validation is requested.
    """

    def is_completed(self, key: str) -> bool: ...

    def exists(self, key: str) -> bool: ...


class StaticOracle:
    """In-memory oracle over sets of completed and known item keys."""

    def __init__(self, completed: Iterable[str] = (), existing: Iterable[str] = ()) -> None:
        self._completed = set(completed)
        self._existing = set(existing) | self._completed
        self._lock = threading.Lock()

    def mark_completed(self, key: str) -> None:
        with self._lock:
            self._completed.add(key)
            self._existing.add(key)

    def mark_existing(self, key: str) -> None:
        with self._lock:
            self._existing.add(key)

    def is_completed(self, key: str) -> bool:
        with self._lock:
            return key in self._completed

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._existing


@dataclass(frozen=True)
class DependencyUnmet:
    """Blocking status of a work item; a value, never raised."""

    item_id: str
    unmet: tuple[str, ...]

    def __str__(self) -> str:
        return f"{self.item_id} blocked by {', '.join(self.unmet)}"


class DependencyResolver:
    """Compute which work items may start.

    Args:
        strict_cross_repo: Require cross-repository dependencies to be
            completed rather than merely existing.
    """

    def __init__(self, strict_cross_repo: bool = False) -> None:
        self.strict_cross_repo = strict_cross_repo

    def build_graph(self, items: Iterable[WorkItem]) -> DependencyGraph:
        return build_graph(items)

    def is_satisfied(self, node: str, graph: DependencyGraph, oracle: CompletionOracle) -> bool:
        if graph.is_cross_repo(node) and not self.strict_cross_repo:
            return oracle.exists(node)
        return oracle.is_completed(node)

    def is_ready(self, item: WorkItem | str, graph: DependencyGraph, oracle: CompletionOracle) -> bool:
        """True only if every direct dependency of ``item`` is complete."""
        item_id = item.id if isinstance(item, WorkItem) else item
        return all(self.is_satisfied(dep, graph, oracle) for dep in graph.dependencies(item_id))

    def blocked_by(self, item: WorkItem | str, graph: DependencyGraph, oracle: CompletionOracle) -> DependencyUnmet:
        """Every unsatisfied node in the transitive closure of ``item``."""
        item_id = item.id if isinstance(item, WorkItem) else item
        unmet = [dep for dep in graph.closure(item_id) if not self.is_satisfied(dep, graph, oracle)]
        return DependencyUnmet(item_id=item_id, unmet=tuple(sorted(unmet, key=node_sort_key)))

    def ready_frontier(
        self,
        graph: DependencyGraph,
        oracle: CompletionOracle,
        items: Iterable[WorkItem | str] | None = None,
        exclude: Iterable[str] = (),
    ) -> list[WorkItem]:
        """Items whose entire transitive dependency closure is satisfied.

        An item is never ready while any ancestor is unresolved, even if its
        direct dependencies look done. Items already completed, failed or in
        progress, and ids in ``exclude``, are not returned. ``items`` limits
        the candidates; by default every item of the graph is considered.

        Returns:
            Each ready item once, in topological order.
        """
        skip = set(exclude)
        wanted = None if items is None else {i.id if isinstance(i, WorkItem) else i for i in items}
        frontier = []
        for item_id in graph.topological_order():
            item = graph.items[item_id]
            if item_id in skip or (wanted is not None and item_id not in wanted) or item.status in (
                WorkItemStatus.COMPLETED,
                WorkItemStatus.FAILED,
                WorkItemStatus.IN_PROGRESS,
            ):
                continue
            if oracle.is_completed(item_id):
                continue
            if not self.blocked_by(item_id, graph, oracle).unmet:
                frontier.append(item)
        return frontier

    def classify(self, graph: DependencyGraph, oracle: CompletionOracle) -> dict[str, DependencyUnmet]:
        """Set ready/blocked on every unresolved item.

        Returns:
            The blocked items and what blocks them.
        """
        blocked: dict[str, DependencyUnmet] = {}
        for item_id in graph.topological_order():
            item = graph.items[item_id]
            if item.status not in (WorkItemStatus.UNRESOLVED, WorkItemStatus.READY, WorkItemStatus.BLOCKED):
                continue
            status = self.blocked_by(item_id, graph, oracle)
            if status.unmet:
                item.status = WorkItemStatus.BLOCKED
                blocked[item_id] = status
            else:
                item.status = WorkItemStatus.READY
        if blocked:
            logger.debug("Blocked items: %s", "; ".join(str(s) for s in blocked.values()))
        return blocked
