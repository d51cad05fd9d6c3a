import json
import os

import yaml

# Loader that tolerates manifest tags (!ref) without resolving them, so
# detect_format can read manifests cheaply.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _is_manifest(doc) -> bool:
    return isinstance(doc, dict) and isinstance(doc.get("resources"), list)


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'manifest', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "manifest" if _is_manifest(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                doc = yaml.load(fh, Loader=_TagTolerantLoader)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "manifest" if _is_manifest(doc) else "unknown"

    return "unknown"
