"""
Dependency resolver.

Kahn's algorithm, emitted layer by layer: everything in a layer depends only
on earlier layers, so a layer can be applied concurrently. Ties inside a layer
keep the order the nodes were given in.
"""
from typing import Dict, Iterable, List, Sequence

from stackplan.errors import CyclicDependencyError
from stackplan.graph.builder import ResourceGraph


def layers(nodes: Sequence[str], dependencies: Dict[str, Iterable[str]]) -> List[List[str]]:
    """
    Topologically layer ``nodes``. Dependencies on ids outside ``nodes`` are
    ignored, which lets callers order a subset of a larger graph.
    """
    position = {n: i for i, n in enumerate(nodes)}
    deps = {n: [d for d in dependencies.get(n, ()) if d in position] for n in nodes}

    indegree = {n: len(set(deps[n])) for n in nodes}
    dependents: Dict[str, List[str]] = {n: [] for n in nodes}
    for n in nodes:
        for d in set(deps[n]):
            dependents[d].append(n)

    result: List[List[str]] = []
    current = [n for n in nodes if indegree[n] == 0]
    placed = 0
    while current:
        result.append(current)
        placed += len(current)
        ready = []
        for n in current:
            for m in dependents[n]:
                indegree[m] -= 1
                if indegree[m] == 0:
                    ready.append(m)
        current = sorted(ready, key=position.__getitem__)

    if placed < len(nodes):
        remaining = [n for n in nodes if indegree[n] > 0]
        raise CyclicDependencyError(_find_cycle(remaining, deps))
    return result


def _find_cycle(remaining: List[str], deps: Dict[str, List[str]]) -> List[str]:
    # Every unplaced node still waits on another unplaced node, so following
    # those edges from any start must revisit a node.
    pending = set(remaining)
    path: List[str] = []
    seen: Dict[str, int] = {}
    node = remaining[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(d for d in deps[node] if d in pending)
    return path[seen[node]:]


def resolve(graph: ResourceGraph) -> List[List[str]]:
    """Layers for creating/updating the graph, dependencies first."""
    return layers(list(graph.resources), graph.dependencies)


def order(graph: ResourceGraph) -> List[str]:
    return [rid for layer in resolve(graph) for rid in layer]


def teardown_layers(nodes: Sequence[str], dependencies: Dict[str, Iterable[str]]) -> List[List[str]]:
    """Layers for destroying ``nodes``: dependents before their dependencies."""
    member = set(nodes)
    reversed_deps: Dict[str, List[str]] = {n: [] for n in nodes}
    for n in nodes:
        for d in dependencies.get(n, ()):
            if d in member and n not in reversed_deps[d]:
                reversed_deps[d].append(n)
    return layers(list(reversed(list(nodes))), reversed_deps)
