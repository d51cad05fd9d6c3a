from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ResourceState:
    resource_id: str
    resource_type: str
    kind: str
    provider_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)   # as declared, refs as ${...}
    resolved: Dict[str, Any] = field(default_factory=dict)     # as sent to the provider
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    deposed: List[str] = field(default_factory=list)           # old provider ids awaiting destroy
    updated_at: str = field(default_factory=_now)

    def value(self, attribute: str) -> Any:
        """Look an attribute up in the outputs first, then in the resolved inputs."""
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.resolved:
            return self.resolved[attribute]
        raise KeyError(attribute)

    def has_value(self, attribute: str) -> bool:
        return attribute in self.outputs or attribute in self.resolved

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "kind": self.kind,
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "resolved": self.resolved,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "deposed": self.deposed,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceState":
        return cls(
            resource_id=data["resource_id"],
            resource_type=data["resource_type"],
            kind=data["kind"],
            provider_id=data["provider_id"],
            attributes=dict(data.get("attributes") or {}),
            resolved=dict(data.get("resolved") or {}),
            outputs=dict(data.get("outputs") or {}),
            dependencies=list(data.get("dependencies") or []),
            deposed=list(data.get("deposed") or []),
            updated_at=data.get("updated_at") or _now(),
        )


# resource_id -> ResourceState
Snapshot = Dict[str, ResourceState]


def deposed_key(resource_id: str, provider_id: str) -> str:
    return f"{resource_id} (deposed {provider_id})"
