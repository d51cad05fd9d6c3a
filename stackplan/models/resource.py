import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class ResourceKind(str, Enum):
    NETWORK         = "network"
    SECURITY_POLICY = "security-policy"
    IDENTITY_ROLE   = "identity-role"
    REGISTRY        = "registry"
    COMPUTE_SERVICE = "compute-service"


KIND_BY_TYPE = {
    "aws_vpc":                        ResourceKind.NETWORK,
    "aws_subnet":                     ResourceKind.NETWORK,
    "aws_internet_gateway":           ResourceKind.NETWORK,
    "aws_route_table":                ResourceKind.NETWORK,
    "aws_security_group":             ResourceKind.SECURITY_POLICY,
    "aws_security_group_rule":        ResourceKind.SECURITY_POLICY,
    "aws_iam_role":                   ResourceKind.IDENTITY_ROLE,
    "aws_iam_policy":                 ResourceKind.IDENTITY_ROLE,
    "aws_iam_role_policy_attachment": ResourceKind.IDENTITY_ROLE,
    "aws_ecr_repository":             ResourceKind.REGISTRY,
    "aws_ecs_cluster":                ResourceKind.COMPUTE_SERVICE,
    "aws_ecs_task_definition":        ResourceKind.COMPUTE_SERVICE,
    "aws_ecs_service":                ResourceKind.COMPUTE_SERVICE,
    "aws_apprunner_service":          ResourceKind.COMPUTE_SERVICE,
    "aws_lambda_function":            ResourceKind.COMPUTE_SERVICE,
}


def infer_kind(resource_type: str) -> Optional[ResourceKind]:
    """Map a resource type to its provider kind; bare kind names are accepted too."""
    if resource_type in KIND_BY_TYPE:
        return KIND_BY_TYPE[resource_type]
    normalised = resource_type.replace("_", "-")
    for kind in ResourceKind:
        if kind.value == normalised:
            return kind
    return None


# ${type.name} or ${type.name.attribute}
REF_RE = re.compile(r"\$\{\s*([A-Za-z][\w-]*)\.([\w-]+)(?:\.([\w-]+))?\s*\}")

# type and name labels; an address doubles as a state file name
_TYPE_RE = re.compile(r"[A-Za-z][\w-]*")
_NAME_RE = re.compile(r"[\w-]+")


def valid_address(resource_type: str, name: str) -> bool:
    return bool(_TYPE_RE.fullmatch(resource_type) and _NAME_RE.fullmatch(name))


@dataclass(frozen=True)
class Reference:
    resource_type: str
    name: str
    attribute: Optional[str] = None

    @property
    def resource_id(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def expression(self) -> str:
        if self.attribute:
            return f"{self.resource_id}.{self.attribute}"
        return self.resource_id

    def __str__(self) -> str:
        return f"${{{self.expression}}}"

    @classmethod
    def parse(cls, expression: str) -> "Reference":
        """Parse 'type.name[.attribute]' with or without the ${} wrapper."""
        text = expression.strip()
        if not text.startswith("${"):
            text = f"${{{text}}}"
        m = REF_RE.fullmatch(text)
        if not m:
            raise ValueError(f"not a resource reference: {expression!r}")
        return cls(m.group(1), m.group(2), m.group(3))


def find_references(val: Any) -> List[Reference]:
    """Recursively scan an attribute value for references."""
    refs: List[Reference] = []
    if isinstance(val, str):
        for m in REF_RE.finditer(val):
            refs.append(Reference(m.group(1), m.group(2), m.group(3)))
    elif isinstance(val, list):
        for item in val:
            refs.extend(find_references(item))
    elif isinstance(val, dict):
        for v in val.values():
            refs.extend(find_references(v))
    return refs


@dataclass
class Resource:
    resource_type: str     # e.g. "aws_vpc", "aws_ecs_service"
    name: str              # logical name, unique per type
    kind: ResourceKind
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)   # "type.name" entries
    source_file: str = ""

    @property
    def resource_id(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def references(self) -> List[Tuple[str, Reference]]:
        """
        Every (attribute, reference) pair this resource consumes, including the
        attribute-less ordering edges from depends_on.
        """
        pairs: List[Tuple[str, Reference]] = []
        for attr, val in self.attributes.items():
            for ref in find_references(val):
                pairs.append((attr, ref))
        for dep in self.depends_on:
            ref = Reference.parse(dep)
            pairs.append(("depends_on", Reference(ref.resource_type, ref.name)))
        return pairs


def stringify(val: Any) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    if isinstance(val, (list, dict)):
        return json.dumps(val, sort_keys=True)
    return str(val)


def substitute(val: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Replace every reference inside ``val`` with ``lookup(ref)``.

    A string that is exactly one reference takes the looked-up value as is, so
    lists and numbers survive; references embedded in longer strings are
    interpolated as text.
    """
    if isinstance(val, str):
        whole = REF_RE.fullmatch(val.strip())
        if whole:
            return lookup(Reference(whole.group(1), whole.group(2), whole.group(3)))
        return REF_RE.sub(
            lambda m: stringify(lookup(Reference(m.group(1), m.group(2), m.group(3)))), val
        )
    if isinstance(val, list):
        return [substitute(v, lookup) for v in val]
    if isinstance(val, dict):
        return {k: substitute(v, lookup) for k, v in val.items()}
    return val
