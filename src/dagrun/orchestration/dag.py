"""Dependency-graph helpers: topological order, cycle reporting, ancestry.

Operates on plain ``{name: depends_on}`` mappings so that the registry,
the scheduler and the YAML loader can share it without importing each
other.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping

from dagrun.orchestration.exceptions import CyclicDependencyError

DependencyMap = Mapping[str, Iterable[str]]


def dependents_map(deps: DependencyMap) -> dict[str, list[str]]:
    """Return adjacency list of dependencies (dep -> dependents)."""
    graph: dict[str, list[str]] = defaultdict(list)
    for name, parents in deps.items():
        for parent in parents:
            graph[parent].append(name)
    return dict(graph)


def topological_order(deps: DependencyMap) -> list[str]:
    """Return names in dependency order (Kahn's algorithm).

    Ties keep declaration order, so a definition without edges runs in the
    order it was written.

    Raises:
        CyclicDependencyError: If the graph is not acyclic.
    """
    in_degree: dict[str, int] = {name: 0 for name in deps}
    adjacency: dict[str, list[str]] = defaultdict(list)

    for name, parents in deps.items():
        for parent in parents:
            adjacency[parent].append(name)
            in_degree[name] += 1

    queue: deque[str] = deque(name for name, degree in in_degree.items() if degree == 0)
    order: list[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for neighbor in adjacency[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(in_degree):
        remaining = {name for name, degree in in_degree.items() if degree > 0}
        raise CyclicDependencyError(find_cycle(deps, remaining))

    return order


def find_cycle(deps: DependencyMap, candidates: Iterable[str] | None = None) -> list[str]:
    """Return one cycle as a closed path (``[a, b, a]``), or ``[]`` if none."""
    parents = {name: list(p) for name, p in deps.items()}
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for parent in parents.get(node, ()):
            if parent in visiting:
                start = path.index(parent)
                # ``path`` follows depends_on edges; reverse to read as execution order
                return list(reversed(path[start:] + [parent]))
            if parent not in done:
                found = visit(parent)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for name in candidates if candidates is not None else parents:
        if name not in done:
            found = visit(name)
            if found:
                return found
    return []


def ancestors(deps: DependencyMap, name: str) -> set[str]:
    """All steps reachable from *name* through ``depends_on`` edges."""
    seen: set[str] = set()
    stack = list(deps.get(name, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(deps.get(node, ()))
    return seen


__all__ = ["dependents_map", "topological_order", "find_cycle", "ancestors"]
