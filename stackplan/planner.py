"""
Plan generator.

Diffs the desired graph against the last-applied snapshot. Creates and
updates run first, layered dependencies-first; destroys (removed resources and
the deposed halves of replacements) run afterwards, dependents-first.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from stackplan.graph import resolver
from stackplan.graph.builder import ResourceGraph
from stackplan.models.plan import KNOWN_AFTER_APPLY, Action, ActionType, Plan
from stackplan.models.resource import Reference, Resource, ResourceKind, substitute
from stackplan.models.state import ResourceState, Snapshot, deposed_key

_MISSING = object()


@dataclass(frozen=True)
class ReplacePolicy:
    """
    Which attribute changes a kind can absorb in place.

    With ``force_new`` set, only those attributes force a replacement.
    Otherwise every changed attribute outside ``in_place`` does.
    """
    in_place: FrozenSet[str] = frozenset()
    force_new: Optional[FrozenSet[str]] = None

    def requires_replacement(self, changed: Iterable[str]) -> bool:
        changed = set(changed)
        if self.force_new is not None:
            return bool(changed & self.force_new)
        return bool(changed - self.in_place)


DEFAULT_POLICIES: Dict[ResourceKind, ReplacePolicy] = {
    ResourceKind.NETWORK:         ReplacePolicy(in_place=frozenset({"tags"})),
    ResourceKind.SECURITY_POLICY: ReplacePolicy(in_place=frozenset({"tags", "ingress", "egress"})),
    ResourceKind.IDENTITY_ROLE:   ReplacePolicy(in_place=frozenset({"tags"})),
    ResourceKind.REGISTRY:        ReplacePolicy(
        in_place=frozenset({"tags", "image_tag_mutability", "scan_on_push"})
    ),
    ResourceKind.COMPUTE_SERVICE: ReplacePolicy(force_new=frozenset({"name", "launch_type"})),
}


def _has_unknown(val: Any) -> bool:
    if isinstance(val, str):
        return KNOWN_AFTER_APPLY in val
    if isinstance(val, list):
        return any(_has_unknown(v) for v in val)
    if isinstance(val, dict):
        return any(_has_unknown(v) for v in val.values())
    return False


def _preview(resource: Resource, snapshot: Snapshot, pending: Set[str]) -> Dict[str, Any]:
    """Resolve what is already known; the rest shows as KNOWN_AFTER_APPLY."""

    def lookup(ref: Reference) -> Any:
        state = snapshot.get(ref.resource_id)
        if ref.resource_id in pending or state is None:
            return KNOWN_AFTER_APPLY
        if ref.attribute is None:
            return state.provider_id
        if not state.has_value(ref.attribute):
            return KNOWN_AFTER_APPLY
        return state.value(ref.attribute)

    return {k: substitute(v, lookup) for k, v in resource.attributes.items()}


def _changed_attributes(
    resource: Resource, prior: ResourceState, preview: Dict[str, Any]
) -> List[str]:
    keys = list(resource.attributes) + [k for k in prior.attributes if k not in resource.attributes]
    changed = []
    for k in keys:
        if resource.attributes.get(k, _MISSING) != prior.attributes.get(k, _MISSING):
            changed.append(k)
        elif _has_unknown(preview.get(k)):
            changed.append(k)
        elif k in prior.resolved and preview.get(k) != prior.resolved[k]:
            changed.append(k)
    return changed


def generate(
    graph: ResourceGraph,
    snapshot: Snapshot,
    policies: Optional[Dict[ResourceKind, ReplacePolicy]] = None,
) -> Plan:
    """
    Produce the ordered plan reconciling ``snapshot`` with ``graph``.

    Raises CyclicDependencyError before anything is planned when the graph
    cannot be ordered.
    """
    policies = policies or DEFAULT_POLICIES
    create_layers = resolver.resolve(graph)

    actions: List[Action] = []
    pending: Set[str] = set()
    newly_deposed: Dict[str, str] = {}

    for depth, ids in enumerate(create_layers):
        for rid in ids:
            resource = graph.resources[rid]
            prior = snapshot.get(rid)
            preview = _preview(resource, snapshot, pending)
            common = dict(
                resource_id=rid,
                resource_type=resource.resource_type,
                kind=resource.kind,
                layer=depth,
                attributes=resource.attributes,
                preview=preview,
                dependencies=list(graph.dependencies[rid]),
                prior=prior,
            )

            if prior is None:
                pending.add(rid)
                actions.append(Action(ActionType.CREATE, changed=list(resource.attributes), **common))
                continue

            changed = _changed_attributes(resource, prior, preview)
            if not changed:
                continue

            policy = policies.get(resource.kind, DEFAULT_POLICIES[resource.kind])
            if policy.requires_replacement(changed):
                pending.add(rid)
                newly_deposed[rid] = prior.provider_id
                actions.append(
                    Action(ActionType.CREATE, replacement=True, changed=changed, **common)
                )
            else:
                actions.append(Action(ActionType.UPDATE, changed=changed, **common))

    actions.extend(_teardown(graph, snapshot, newly_deposed, offset=len(create_layers)))
    return Plan(actions)


def generate_teardown(snapshot: Snapshot) -> Plan:
    """Plan destroying everything recorded in state."""
    return Plan(_teardown(ResourceGraph(), snapshot, {}, offset=0))


def _teardown(
    graph: ResourceGraph,
    snapshot: Snapshot,
    newly_deposed: Dict[str, str],
    offset: int,
) -> List[Action]:
    nodes: List[str] = []
    targets: Dict[str, tuple] = {}
    # resource id -> teardown nodes standing for it (deposed instances, then the live entry)
    nodes_for: Dict[str, List[str]] = {}

    for rid, state in snapshot.items():
        deposed_ids = list(state.deposed)
        if rid in newly_deposed:
            deposed_ids.append(newly_deposed[rid])
        for pid in deposed_ids:
            key = deposed_key(rid, pid)
            targets[key] = (state, pid)
            nodes_for.setdefault(rid, []).append(key)
        if rid not in graph:
            targets[rid] = (state, None)
            nodes_for.setdefault(rid, []).append(rid)
        nodes.extend(nodes_for.get(rid, []))

    deps: Dict[str, List[str]] = {}
    for key in nodes:
        state, pid = targets[key]
        deps[key] = [n for d in state.dependencies for n in nodes_for.get(d, [])]
        if pid is not None and state.resource_id in targets:
            # the live entry of a doomed resource goes only after its deposed instances
            deps[key].append(state.resource_id)

    actions: List[Action] = []
    for depth, keys in enumerate(resolver.teardown_layers(nodes, deps)):
        for key in keys:
            state, pid = targets[key]
            actions.append(
                Action(
                    ActionType.DESTROY,
                    resource_id=state.resource_id,
                    resource_type=state.resource_type,
                    kind=ResourceKind(state.kind),
                    layer=offset + depth,
                    attributes=state.attributes,
                    preview=state.resolved,
                    dependencies=list(state.dependencies),
                    prior=state,
                    deposed_id=pid,
                )
            )
    return actions
