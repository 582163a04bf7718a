"""
DAG Flow — Dependency Graph

Directed acyclic dependency structure over named nodes. Edges are stored
as "dependencies of `to`" so a readiness check is one subset test per
node.

Adding an edge is pure bookkeeping. Cycles are only detected by
topological_sort(), which the executor runs once before any step
executes so an invalid workflow fails with zero side effects.

Usage:
    from dagflow.graph import Graph

    g = Graph()
    for name in ("fetch", "parse", "store"):
        g.add_node(name)
    g.add_edge("fetch", "parse")
    g.add_edge("parse", "store")

    g.topological_sort()        # ["fetch", "parse", "store"]
    g.get_ready({"fetch"})      # ["parse"]
"""

from __future__ import annotations

from typing import Iterable, Iterator

from dagflow.errors import CycleError, DuplicateNodeError, UnknownNodeError

# Tri-color DFS marks
_WHITE = 0   # not visited
_GRAY = 1    # on the current DFS path
_BLACK = 2   # finished, already emitted


class Graph:
    """
    DAG over string node ids.

    Node order is registration order; every query that returns a list
    returns it in that order so scheduling is deterministic.
    """

    def __init__(self):
        self._deps: dict[str, set[str]] = {}   # node → direct predecessors

    # ── Registration ─────────────────────────────────────────

    def add_node(self, node_id: str) -> None:
        if node_id in self._deps:
            raise DuplicateNodeError(node_id)
        self._deps[node_id] = set()

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Declare that `to_id` cannot start until `from_id` is resolved."""
        if from_id not in self._deps:
            raise UnknownNodeError(from_id, f"edge {from_id} -> {to_id}")
        if to_id not in self._deps:
            raise UnknownNodeError(to_id, f"edge {from_id} -> {to_id}")
        self._deps[to_id].add(from_id)

    # ── Queries ──────────────────────────────────────────────

    @property
    def node_count(self) -> int:
        return len(self._deps)

    @property
    def nodes(self) -> list[str]:
        return list(self._deps)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._deps))

    def get_dependencies(self, node_id: str) -> set[str]:
        if node_id not in self._deps:
            raise UnknownNodeError(node_id)
        return set(self._deps[node_id])

    def get_dependents(self, node_id: str) -> list[str]:
        """Direct successors of a node."""
        if node_id not in self._deps:
            raise UnknownNodeError(node_id)
        return [n for n, deps in self._deps.items() if node_id in deps]

    def edges(self) -> list[tuple[str, str]]:
        """All edges as (from, to) pairs."""
        return [
            (dep, node)
            for node in self._deps
            for dep in self._sorted_deps(node)
        ]

    def get_roots(self) -> list[str]:
        return [n for n, deps in self._deps.items() if not deps]

    def get_ready(self, resolved: Iterable[str]) -> list[str]:
        """Nodes not in `resolved` whose whole dependency set is in `resolved`."""
        done = set(resolved)
        return [
            n for n, deps in self._deps.items()
            if n not in done and deps <= done
        ]

    # ── Validation ───────────────────────────────────────────

    def topological_sort(self) -> list[str]:
        """
        Return a total order consistent with every edge.

        Tri-color depth-first search over the dependency relation, run with
        an explicit stack so very deep chains do not hit the recursion
        limit. Reaching a GRAY node again means it is on the current path,
        which proves a cycle.

        Raises:
            CycleError: naming the node where the cycle closed, with the
                        cycle path in `.cycle`.
        """
        color = dict.fromkeys(self._deps, _WHITE)
        order: list[str] = []

        for root in self._deps:
            if color[root] != _WHITE:
                continue

            color[root] = _GRAY
            path = [root]
            stack = [(root, iter(self._sorted_deps(root)))]

            while stack:
                node, pending = stack[-1]
                advanced = False
                for dep in pending:
                    if color[dep] == _GRAY:
                        start = path.index(dep)
                        # path runs from dependents to dependencies; flip it
                        # so the cycle reads in edge direction
                        cycle = list(reversed(path[start:])) + [path[-1]]
                        raise CycleError(dep, cycle)
                    if color[dep] == _WHITE:
                        color[dep] = _GRAY
                        path.append(dep)
                        stack.append((dep, iter(self._sorted_deps(dep))))
                        advanced = True
                        break
                if advanced:
                    continue

                stack.pop()
                path.pop()
                color[node] = _BLACK
                order.append(node)

        return order

    # ── Internal Helpers ─────────────────────────────────────

    def _sorted_deps(self, node_id: str) -> list[str]:
        index = {n: i for i, n in enumerate(self._deps)}
        return sorted(self._deps[node_id], key=index.__getitem__)

    def __repr__(self) -> str:
        return f"Graph(nodes={self.node_count}, edges={len(self.edges())})"
