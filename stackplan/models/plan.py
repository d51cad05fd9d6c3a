from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from stackplan.models.resource import ResourceKind
from stackplan.models.state import ResourceState, deposed_key


class ActionType(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    DESTROY = "destroy"


class OutcomeStatus(str, Enum):
    SUCCEEDED     = "succeeded"
    FAILED        = "failed"
    NOT_ATTEMPTED = "not_attempted"


# Placeholder for values only the provider can produce.
KNOWN_AFTER_APPLY = "(known after apply)"


@dataclass
class Action:
    action_type: ActionType
    resource_id: str
    resource_type: str
    kind: ResourceKind
    layer: int = 0
    attributes: Dict[str, Any] = field(default_factory=dict)   # declared, refs unresolved
    preview: Dict[str, Any] = field(default_factory=dict)      # resolved where already known
    dependencies: List[str] = field(default_factory=list)
    prior: Optional[ResourceState] = None
    replacement: bool = False
    deposed_id: Optional[str] = None
    changed: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        if self.deposed_id:
            return deposed_key(self.resource_id, self.deposed_id)
        return self.resource_id

    @property
    def label(self) -> str:
        if self.replacement and self.action_type == ActionType.CREATE:
            return "replace"
        return self.action_type.value

    def to_dict(self) -> dict:
        return {
            "action": self.action_type.value,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "kind": self.kind.value,
            "layer": self.layer,
            "replacement": self.replacement,
            "deposed_id": self.deposed_id,
            "changed": self.changed,
            "attributes": self.preview,
        }


@dataclass
class Plan:
    actions: List[Action] = field(default_factory=list)

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def layers(self) -> List[List[Action]]:
        """Group consecutive actions by layer, preserving plan order."""
        grouped: List[List[Action]] = []
        for action in self.actions:
            if grouped and grouped[-1][0].layer == action.layer:
                grouped[-1].append(action)
            else:
                grouped.append([action])
        return grouped

    def counts(self) -> Dict[str, int]:
        counts = {"create": 0, "update": 0, "replace": 0, "destroy": 0}
        for a in self.actions:
            if a.action_type == ActionType.DESTROY and a.deposed_id:
                continue
            counts[a.label] += 1
        return counts


@dataclass
class ActionOutcome:
    action: Action
    status: OutcomeStatus
    error: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "action": self.action.action_type.value,
            "resource_id": self.action.resource_id,
            "key": self.action.key,
            "status": self.status.value,
            "error": self.error,
            "outputs": self.outputs,
            "duration": round(self.duration, 3),
        }


@dataclass
class ApplyResult:
    outcomes: List[ActionOutcome] = field(default_factory=list)
    cancelled: bool = False

    def _with(self, status: OutcomeStatus) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> List[ActionOutcome]:
        return self._with(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> List[ActionOutcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def not_attempted(self) -> List[ActionOutcome]:
        return self._with(OutcomeStatus.NOT_ATTEMPTED)

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(
            o.status == OutcomeStatus.SUCCEEDED for o in self.outcomes
        )
