"""
Resource graph builder: declarations in, validated dependency graph out.
"""
from typing import Dict, Iterator, List, Optional

from stackplan.errors import DeclarationError, DuplicateResourceError, UndeclaredReferenceError
from stackplan.models.resource import Resource

# Expression roots that are not resources. The parsers substitute var.* and
# module.* before the graph is built; anything left over is unsupported.
RESERVED_ROOTS = {"var", "local", "module", "data", "path", "terraform", "count", "each", "self"}


class ResourceGraph:
    """Nodes keyed by resource id in declaration order; edges point at dependencies."""

    def __init__(self) -> None:
        self.resources: Dict[str, Resource] = {}
        self.dependencies: Dict[str, List[str]] = {}

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self.resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, resource_id: str) -> Optional[Resource]:
        return self.resources.get(resource_id)

    def dependents(self, resource_id: str) -> List[str]:
        return [rid for rid, deps in self.dependencies.items() if resource_id in deps]

    def edges(self) -> List[tuple]:
        return [(src, dst) for src, deps in self.dependencies.items() for dst in deps]


def build(resources: List[Resource]) -> ResourceGraph:
    """
    Build the graph from parsed declarations.

    Raises DuplicateResourceError when two declarations share type and name,
    and UndeclaredReferenceError when an attribute or depends_on entry points
    at a resource that is not declared.
    """
    graph = ResourceGraph()

    for r in resources:
        existing = graph.resources.get(r.resource_id)
        if existing is not None:
            raise DuplicateResourceError(r.resource_id, [existing.source_file, r.source_file])
        graph.resources[r.resource_id] = r

    for r in graph:
        deps: List[str] = []
        for attr, ref in r.references():
            if ref.resource_type in RESERVED_ROOTS:
                raise DeclarationError(
                    f"resource '{r.resource_id}' attribute '{attr}' uses unsupported "
                    f"expression '{ref}'",
                    r.source_file,
                )
            if ref.resource_id not in graph:
                raise UndeclaredReferenceError(r.resource_id, attr, ref.resource_id)
            if ref.resource_id not in deps:
                deps.append(ref.resource_id)
        graph.dependencies[r.resource_id] = deps

    return graph
