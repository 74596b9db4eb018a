"""Dependency DAG with deterministic topological order.

The graph enforces:
- No cycles. A cycle is a manifest error raised at construction time, never
  silently broken.
- A stable order: Kahn's algorithm with ties broken by (name, version), so two
  runs over the same manifest always traverse nodes identically.
- Dependencies come before dependents.
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable, Iterator

from lockward.core.errors import CyclicDependency, MalformedManifest
from lockward.models.manifest import ManifestEntry


class DependencyGraph:
    """Directed acyclic graph of manifest entries.

    Built once per build invocation and never mutated afterwards.
    """

    def __init__(self, entries: Iterable[ManifestEntry]) -> None:
        self._entries: dict[str, ManifestEntry] = {}
        for entry in entries:
            if entry.key in self._entries and self._entries[entry.key] != entry:
                raise MalformedManifest(
                    f"Conflicting duplicate entries for {entry.key}"
                )
            self._entries[entry.key] = entry

        # Forward edges: node -> its dependencies
        self._dependencies: dict[str, tuple[str, ...]] = {}
        # Reverse edges: node -> nodes that depend on it
        self._dependents: dict[str, list[str]] = {key: [] for key in self._entries}
        for key, entry in self._entries.items():
            deps = tuple(dict.fromkeys(entry.dependencies))
            for dep in deps:
                if dep not in self._entries:
                    raise MalformedManifest(
                        f"{key} depends on {dep}, which is not in the manifest"
                    )
                self._dependents[dep].append(key)
            self._dependencies[key] = deps

        self._order: tuple[str, ...] = self._topological_order()
        self._index: dict[str, int] = {key: i for i, key in enumerate(self._order)}

    def _sort_key(self, key: str) -> tuple[str, str]:
        entry = self._entries[key]
        return (entry.name, entry.version)

    def _topological_order(self) -> tuple[str, ...]:
        """Kahn's algorithm over a min-heap keyed by (name, version)."""
        in_degree = {key: len(deps) for key, deps in self._dependencies.items()}
        heap = [(self._sort_key(k), k) for k, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            _, node = heapq.heappop(heap)
            order.append(node)
            for dependent in self._dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self._sort_key(dependent), dependent))

        if len(order) != len(self._entries):
            stuck = sorted(k for k, deg in in_degree.items() if deg > 0)
            cycle = self._find_cycle(set(stuck))
            raise CyclicDependency(
                f"Dependency graph has a cycle: {' -> '.join(cycle)}. "
                f"Ordered {len(order)}/{len(self._entries)} nodes.",
                nodes=cycle,
            )
        return tuple(order)

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Walk dependency edges inside the unordered remainder until a node repeats."""
        if not candidates:
            return []
        node = min(candidates)
        seen: dict[str, int] = {}
        path: list[str] = []
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(d for d in self._dependencies[node] if d in candidates)
        return path[seen[node]:] + [node]

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[ManifestEntry]:
        """Iterate entries in topological order."""
        return (self._entries[k] for k in self._order)

    @property
    def order(self) -> tuple[str, ...]:
        """Node keys in deterministic topological order."""
        return self._order

    def index_of(self, key: str) -> int:
        return self._index[key]

    def entry(self, key: str) -> ManifestEntry:
        return self._entries[key]

    def get_dependencies(self, key: str) -> tuple[str, ...]:
        """Direct dependencies of a node."""
        return self._dependencies[key]

    def get_direct_dependents(self, key: str) -> list[str]:
        return list(self._dependents[key])

    def get_dependents(self, key: str) -> list[str]:
        """All transitive dependents of a node (BFS), in topological order."""
        visited: set[str] = set()
        queue = deque(self._dependents[key])
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            queue.extend(self._dependents[node])
        return sorted(visited, key=self._index.__getitem__)

    @property
    def roots(self) -> list[str]:
        """Nodes nothing depends on (the top-level packages)."""
        return [k for k in self._order if not self._dependents[k]]
