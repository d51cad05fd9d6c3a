"""
Markdown + Mermaid plan report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jinja2 import Environment

from stackplan import __version__
from stackplan.graph.builder import ResourceGraph
from stackplan.models.plan import Plan
from stackplan.models.resource import ResourceKind

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "destroy": "-",
}

_SUBGRAPH = {
    ResourceKind.NETWORK: "Networking",
    ResourceKind.SECURITY_POLICY: "Security",
    ResourceKind.IDENTITY_ROLE: "Identity",
    ResourceKind.REGISTRY: "Registry",
    ResourceKind.COMPUTE_SERVICE: "Compute",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "destroy": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(label: str, kind: ResourceKind) -> str:
    """Return a Mermaid node definition string (without ID)."""
    if kind == ResourceKind.NETWORK:
        return f"{{{label}}}"
    if kind == ResourceKind.IDENTITY_ROLE:
        return f"[/{label}/]"
    if kind == ResourceKind.REGISTRY:
        return f"[({label})]"
    if kind == ResourceKind.COMPUTE_SERVICE:
        return f"(({label}))"
    return f"[{label}]"


def build_mermaid(graph: ResourceGraph, plan: Optional[Plan] = None) -> str:
    """Flowchart of the graph; edges point from consumer to producer."""
    planned: Dict[str, str] = {}
    for action in plan or []:
        if not action.deposed_id:
            planned[action.resource_id] = action.label

    subgraphs: Dict[str, List] = defaultdict(list)
    for r in graph:
        subgraphs[_SUBGRAPH[r.kind]].append(r)

    lines = ["flowchart LR"]
    for sg_name in ["Networking", "Security", "Identity", "Registry", "Compute"]:
        members = subgraphs.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for r in members:
            lines.append(f"        {_sanitize_node_id(r.resource_id)}{_node_shape(r.resource_id, r.kind)}")
        lines.append("    end")

    added_edges = set()
    for r in graph:
        src_id = _sanitize_node_id(r.resource_id)
        for attr, ref in r.references():
            dst_id = _sanitize_node_id(ref.resource_id)
            edge_key = (src_id, dst_id, attr)
            if edge_key in added_edges:
                continue
            added_edges.add(edge_key)
            lines.append(f"    {src_id} -->|{attr}| {dst_id}")

    for rid, label in planned.items():
        style = _ACTION_STYLE.get(label)
        if style and rid in graph:
            lines.append(f"    style {_sanitize_node_id(rid)} {style}")

    return "\n".join(lines)


_TEMPLATE = """\
# Execution Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackplan v{{ version }}

---

## Summary

{% if plan.is_empty %}No changes. Infrastructure matches the declarations.
{% else %}Plan: **{{ counts.create }}** to create, **{{ counts.update }}** to update, **{{ counts.replace }}** to replace, **{{ counts.destroy }}** to destroy.
{% endif %}
---

## Actions

| # | Layer | Action | Resource | Kind | Changed |
|---|-------|--------|----------|------|---------|
{% for a in plan.actions %}| {{ loop.index }} | {{ a.layer }} | `{{ symbol[a.label] }}` {{ a.label }} | `{{ a.key }}` | {{ a.kind.value }} | {{ a.changed | join(", ") }} |
{% endfor %}
{% if mermaid %}
## Dependency Graph

```mermaid
{{ mermaid }}
```
{% endif %}"""


def build_report(plan: Plan, graph: Optional[ResourceGraph], source_path: str) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        counts=plan.counts(),
        symbol=_ACTION_SYMBOL,
        mermaid=build_mermaid(graph, plan) if graph is not None and len(graph) else "",
    )
