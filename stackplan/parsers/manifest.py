"""
YAML / JSON manifest parser.

    resources:
      - type: aws_security_group
        name: web
        attributes:
          vpc_id: !ref aws_vpc.main.id
        depends_on: [aws_iam_role.task]
"""
import json
import os
from typing import Any, List

import yaml

from stackplan.errors import DeclarationError
from stackplan.models.resource import Reference, Resource, ResourceKind, infer_kind, valid_address


# ------------------------------------------------------------------ YAML loader
# !ref type.name.attribute is turned into the same ${...} expression the HCL
# parser produces, so the rest of the pipeline sees one reference syntax.

class _ManifestLoader(yaml.SafeLoader):
    pass


def _ref_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> str:
    expression = loader.construct_scalar(node)
    try:
        return str(Reference.parse(expression))
    except ValueError as exc:
        raise yaml.constructor.ConstructorError(None, None, str(exc), node.start_mark)


_ManifestLoader.add_constructor("!ref", _ref_constructor)


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath, encoding="utf-8") as fh:
            if ext == ".json":
                return json.load(fh)
            return yaml.load(fh, Loader=_ManifestLoader)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise DeclarationError(f"failed to parse manifest: {exc}", filepath)


def _kind(entry: dict, resource_type: str, filepath: str) -> ResourceKind:
    declared = entry.get("kind")
    if declared:
        try:
            return ResourceKind(declared)
        except ValueError:
            valid = ", ".join(k.value for k in ResourceKind)
            raise DeclarationError(f"unknown kind '{declared}' (expected one of {valid})", filepath)
    kind = infer_kind(resource_type)
    if kind is None:
        raise DeclarationError(
            f"cannot infer the kind of resource type '{resource_type}'; set 'kind' explicitly",
            filepath,
        )
    return kind


def parse_file(filepath: str) -> List[Resource]:
    doc = _load(filepath)
    if not isinstance(doc, dict) or not isinstance(doc.get("resources"), list):
        raise DeclarationError("manifest needs a top-level 'resources' list", filepath)

    resources: List[Resource] = []
    for i, entry in enumerate(doc["resources"]):
        if not isinstance(entry, dict):
            raise DeclarationError(f"resources[{i}] is not a mapping", filepath)
        resource_type = entry.get("type")
        name = entry.get("name")
        if not isinstance(resource_type, str) or not isinstance(name, str):
            raise DeclarationError(f"resources[{i}] needs string 'type' and 'name'", filepath)
        if not valid_address(resource_type, name):
            raise DeclarationError(
                f"resources[{i}]: invalid address '{resource_type}.{name}' "
                "(use letters, digits, '_' and '-')",
                filepath,
            )

        attributes = entry.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise DeclarationError(f"{resource_type}.{name}: 'attributes' must be a mapping", filepath)

        depends_on = []
        for dep in entry.get("depends_on") or []:
            try:
                depends_on.append(Reference.parse(str(dep)).resource_id)
            except ValueError as exc:
                raise DeclarationError(f"{resource_type}.{name}: bad depends_on entry: {exc}", filepath)

        resources.append(
            Resource(
                resource_type=resource_type,
                name=name,
                kind=_kind(entry, resource_type, filepath),
                attributes=attributes,
                depends_on=depends_on,
                source_file=filepath,
            )
        )
    return resources
