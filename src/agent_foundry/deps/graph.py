"""Work items and the dependency graph over them."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_foundry.deps.references import DependencyRef, parse_dependencies, parse_reference
from agent_foundry.errors import CycleError


class WorkItemStatus(str, Enum):
    UNRESOLVED = "unresolved"
    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)


@dataclass
class WorkItem:
    """An externally tracked unit of work (e.g. an issue).

    Attributes:
        id: Opaque external identifier, e.g. ``"42"``.
        description: Natural-language description handed to agents.
        dependencies: References to work items this one depends on.
        repo: Repository the item belongs to (path or name).
        status: Resolution status; the resolver sets ready/blocked, the
            coordinator sets in_progress/completed/failed.
        title: Optional short title.
        files: Paths the item is expected to touch; used to pick the agent
            type in single-agent mode.
    """

    id: str
    description: str = ""
    dependencies: tuple[DependencyRef, ...] = ()
    repo: str | None = None
    status: WorkItemStatus = WorkItemStatus.UNRESOLVED
    title: str = ""
    files: tuple[str, ...] = ()

    @property
    def dependency_keys(self) -> list[str]:
        return [ref.key for ref in self.dependencies]

    @classmethod
    def from_text(cls, item_id: str | int, body: str, repo: str | None = None, title: str = "") -> WorkItem:
        """Build a work item whose dependencies are declared in ``body``."""
        parsed = parse_dependencies(body)
        return cls(id=str(item_id), description=body, dependencies=tuple(parsed.all), repo=repo, title=title)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        """Build from a mapping as found in batch files.

        ``depends_on`` may be a list of ``#N`` / ``owner/repo#N`` strings or
        ints; otherwise dependencies are parsed out of ``body``.
        """
        item_id = str(data["id"])
        body = str(data.get("body") or data.get("description") or "")
        if "depends_on" in data:
            refs: list[DependencyRef] = []
            for raw in data.get("depends_on") or []:
                ref = DependencyRef.local(raw) if isinstance(raw, int) else parse_reference(str(raw))
                if ref not in refs:
                    refs.append(ref)
            dependencies = tuple(refs)
        else:
            dependencies = tuple(parse_dependencies(body).all)
        status = WorkItemStatus(data.get("status", WorkItemStatus.UNRESOLVED.value))
        return cls(
            id=item_id,
            description=str(data.get("description") or body),
            dependencies=dependencies,
            repo=data.get("repo"),
            status=status,
            title=str(data.get("title", "")),
            files=tuple(str(f) for f in data.get("files") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "depends_on": [str(ref) for ref in self.dependencies],
            "repo": self.repo,
            "status": self.status.value,
            "files": list(self.files),
        }


def node_sort_key(node: str) -> tuple[int, int, str]:
    if node.isdigit():
        return (0, int(node), "")
    return (1, 0, node)


@dataclass
class DependencyGraph:
    """Acyclic dependency graph.

    Nodes are work item ids plus the keys of referenced items that are not
    part of the batch ("external" nodes: items outside the batch or in
    another repository). Edges point from an item to what it depends on.
    """

    items: dict[str, WorkItem]
    edges: dict[str, frozenset[str]]
    refs: dict[str, DependencyRef] = field(default_factory=dict)
    _closure: dict[str, frozenset[str]] = field(default_factory=dict, repr=False)
    _dependents: dict[str, frozenset[str]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        reverse: dict[str, set[str]] = defaultdict(set)
        for node, deps in self.edges.items():
            for dep in deps:
                reverse[dep].add(node)
        self._dependents = {node: frozenset(nodes) for node, nodes in reverse.items()}
        self._closure = self._compute_closure()

    def _compute_closure(self) -> dict[str, frozenset[str]]:
        closure: dict[str, frozenset[str]] = {}
        for node in self.topological_order(include_external=True):
            acc: set[str] = set()
            for dep in self.edges.get(node, frozenset()):
                acc.add(dep)
                acc |= closure.get(dep, frozenset())
            closure[node] = frozenset(acc)
        return closure

    def __contains__(self, node: object) -> bool:
        return node in self.edges

    def __len__(self) -> int:
        return len(self.items)

    @property
    def nodes(self) -> list[str]:
        return sorted(self.edges, key=node_sort_key)

    def is_external(self, node: str) -> bool:
        return node not in self.items

    def is_cross_repo(self, node: str) -> bool:
        ref = self.refs.get(node)
        return ref is not None and not ref.is_local

    def dependencies(self, node: str) -> frozenset[str]:
        """Direct dependencies of ``node``."""
        return self.edges.get(node, frozenset())

    def dependents(self, node: str) -> frozenset[str]:
        """Nodes that directly depend on ``node``."""
        return self._dependents.get(node, frozenset())

    def closure(self, node: str) -> frozenset[str]:
        """Transitive dependencies of ``node`` (excluding itself)."""
        return self._closure.get(node, frozenset())

    def descendants(self, node: str) -> frozenset[str]:
        """Everything that transitively depends on ``node``."""
        seen: set[str] = set()
        queue = deque([node])
        while queue:
            for dependent in self.dependents(queue.popleft()):
                if dependent not in seen:
                    seen.add(dependent)
                    queue.append(dependent)
        return frozenset(seen)

    def topological_order(self, include_external: bool = False) -> list[str]:
        """Dependencies before dependents; ties broken by id."""
        indegree = {node: len(deps) for node, deps in self.edges.items()}
        ready = sorted((n for n, d in indegree.items() if d == 0), key=node_sort_key)
        order: list[str] = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            released = []
            for dependent in self._dependents.get(node, frozenset()):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    released.append(dependent)
            if released:
                ready = sorted([*ready, *released], key=node_sort_key)
        if not include_external:
            order = [n for n in order if n in self.items]
        return order

    def layers(self) -> list[list[str]]:
        """Group batch items into layers that can run in parallel.

        Layer 0 has no in-batch dependencies; layer k depends only on layers
        below k. External dependencies do not add layers.
        """
        depth: dict[str, int] = {}
        for node in self.topological_order():
            in_batch = [d for d in self.edges.get(node, frozenset()) if d in self.items]
            depth[node] = 1 + max((depth[d] for d in in_batch), default=-1)
        grouped: dict[int, list[str]] = defaultdict(list)
        for node, level in depth.items():
            grouped[level].append(node)
        return [sorted(grouped[level], key=node_sort_key) for level in sorted(grouped)]


def find_cycle(edges: dict[str, Iterable[str]]) -> list[str] | None:
    """Depth-first search with a recursion stack; return the first cycle found.

    The returned path starts and ends on the same node, e.g.
    ``["1", "2", "3", "1"]``.
    """
    visited: set[str] = set()
    for root in sorted(edges, key=node_sort_key):
        if root in visited:
            continue
        on_stack: dict[str, int] = {root: 0}
        path = [root]
        iterators = [iter(sorted(edges.get(root, ()), key=node_sort_key))]
        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                iterators.pop()
                done = path.pop()
                del on_stack[done]
                visited.add(done)
                continue
            if child in on_stack:
                return path[on_stack[child] :] + [child]
            if child in visited:
                continue
            on_stack[child] = len(path)
            path.append(child)
            iterators.append(iter(sorted(edges.get(child, ()), key=node_sort_key)))
    return None


def build_graph(items: Iterable[WorkItem]) -> DependencyGraph:
    """Build the dependency graph over ``items``.

    Raises:
        CycleError: If the dependencies contain a cycle; no graph is returned.
        ValueError: If two items share an id.
    """
    by_id: dict[str, WorkItem] = {}
    for item in items:
        if item.id in by_id:
            raise ValueError(f"Duplicate work item id {item.id!r}")
        by_id[item.id] = item

    edges: dict[str, frozenset[str]] = {}
    refs: dict[str, DependencyRef] = {}
    for item in by_id.values():
        deps = set()
        for ref in item.dependencies:
            deps.add(ref.key)
            refs.setdefault(ref.key, ref)
        edges[item.id] = frozenset(deps)
    for key in refs:
        edges.setdefault(key, frozenset())

    cycle = find_cycle(edges)
    if cycle is not None:
        raise CycleError(cycle)
    return DependencyGraph(items=by_id, edges=edges, refs=refs)
