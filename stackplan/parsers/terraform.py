"""
HCL parser for resource, variable, module and output blocks.

Modules are flattened at parse time: a module's resources join the single
graph under '<module>_<name>', and ${module.<m>.<output>} in the caller is
replaced by whatever the module's output points at.
"""
import os
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

import hcl2
from rich.console import Console

from stackplan.errors import DeclarationError
from stackplan.models.resource import REF_RE, Reference, Resource, infer_kind, stringify, valid_address

console = Console(stderr=True)

_VAR_RE = re.compile(r"\$\{\s*var\.([\w-]+)\s*\}")
_MODULE_RE = re.compile(r"\$\{\s*module\.([\w-]+)\.([\w-]+)\s*\}")

# Meta-arguments that never reach the provider.
_META_ARGS = {"depends_on", "lifecycle", "provider", "provisioner", "connection"}
_UNSUPPORTED_META = {"count", "for_each"}


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _map_strings(val: Any, fn: Callable[[str], Any]) -> Any:
    if isinstance(val, str):
        return fn(val)
    if isinstance(val, list):
        return [_map_strings(v, fn) for v in val]
    if isinstance(val, dict):
        return {k: _map_strings(v, fn) for k, v in val.items()}
    return val


def _bind(val: Any, pattern: "re.Pattern", lookup: Callable[..., Any]) -> Any:
    """Replace ``pattern`` matches via ``lookup``; a whole-string match keeps the raw value."""

    def one(s: str) -> Any:
        whole = pattern.fullmatch(s.strip())
        if whole:
            return lookup(*whole.groups())
        return pattern.sub(lambda m: stringify(lookup(*m.groups())), s)

    return _map_strings(val, one)


def _blocks(data: Dict[str, Any], key: str) -> Iterator[Tuple[str, Any]]:
    """Yield (label, body) for every top-level block of the given kind."""
    for block in data.get(key, []):
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            yield label, body


def _load(filepath: str) -> Dict[str, Any]:
    try:
        with open(filepath) as fh:
            return hcl2.load(fh)
    except Exception as exc:
        raise DeclarationError(f"failed to parse: {exc}", filepath)


class _Scope:
    """One root or module directory being parsed."""

    def __init__(
        self,
        files: List[str],
        variables: Dict[str, Any],
        prefix: str = "",
        chain: Tuple[str, ...] = (),
    ):
        self.files = files
        self.prefix = prefix
        self.chain = chain
        self.documents = [(fp, _load(fp)) for fp in files]
        self.variables: Dict[str, Any] = {}
        self.modules: Dict[str, Dict[str, Any]] = {}
        self.local_ids: Set[str] = set()

        for fp, data in self.documents:
            for name, body in _blocks(data, "variable"):
                body = _unwrap(body) or {}
                if isinstance(body, dict) and "default" in body:
                    self.variables[name] = body["default"]
            for resource_type, instances in _blocks(data, "resource"):
                for name in self._instance_names(instances):
                    self.local_ids.add(f"{resource_type}.{name}")
        self.variables.update(variables)

    @staticmethod
    def _instance_names(instances: Any) -> List[str]:
        # hcl2 wraps the block in a list
        maps = instances if isinstance(instances, list) else [instances]
        return [name for m in maps if isinstance(m, dict) for name in m]

    # ------------------------------------------------------------------ expressions

    def _var(self, source_file: str) -> Callable[[str], Any]:
        def lookup(name: str) -> Any:
            if name not in self.variables:
                raise DeclarationError(f"variable '{name}' is not set and has no default", source_file)
            return self.variables[name]
        return lookup

    def _module_output(self, source_file: str) -> Callable[[str, str], Any]:
        def lookup(module: str, output: str) -> Any:
            if module not in self.modules:
                raise DeclarationError(
                    f"module '{module}' is not declared before it is referenced", source_file
                )
            outputs = self.modules[module]
            if output not in outputs:
                raise DeclarationError(f"module '{module}' has no output '{output}'", source_file)
            return outputs[output]
        return lookup

    def _qualify(self, val: Any) -> Any:
        if not self.prefix:
            return val

        def fix(m: "re.Match") -> str:
            resource_type, name, attribute = m.groups()
            if f"{resource_type}.{name}" not in self.local_ids:
                return m.group(0)
            return str(Reference(resource_type, self.prefix + name, attribute))

        return _map_strings(val, lambda s: REF_RE.sub(fix, s))

    def evaluate(self, val: Any, source_file: str) -> Any:
        # Local names are qualified before variables are bound, so values
        # passed in from the caller keep pointing at the caller's resources.
        val = self._qualify(val)
        val = _bind(val, _VAR_RE, self._var(source_file))
        return _bind(val, _MODULE_RE, self._module_output(source_file))

    # ------------------------------------------------------------------ blocks

    def _load_module(self, name: str, body: Dict[str, Any], filepath: str) -> List[Resource]:
        source = body.get("source")
        if not isinstance(source, str):
            raise DeclarationError(f"module '{name}' needs a 'source' path", filepath)
        directory = os.path.normpath(os.path.join(os.path.dirname(filepath), source))
        if not os.path.isdir(directory):
            raise DeclarationError(f"module '{name}' source '{source}' is not a directory", filepath)
        if directory in self.chain:
            raise DeclarationError(f"module '{name}' includes itself via '{source}'", filepath)

        arguments = {
            k: self.evaluate(v, filepath)
            for k, v in body.items()
            if k not in ("source", "version", "providers") and k not in _UNSUPPORTED_META
        }
        child = _Scope(
            _tf_files(directory),
            arguments,
            prefix=f"{self.prefix}{name}_",
            chain=self.chain + (directory,),
        )
        resources = child.parse()
        self.modules[name] = child.outputs()
        return resources

    def _resource(self, resource_type: str, name: str, raw: Any, filepath: str) -> Resource:
        props = _unwrap(raw) if isinstance(raw, dict) else {}
        if not isinstance(props, dict):
            props = {}
        if not valid_address(resource_type, self.prefix + name):
            raise DeclarationError(
                f"invalid address '{resource_type}.{self.prefix}{name}' (use letters, digits, '_' and '-')",
                filepath,
            )
        kind = infer_kind(resource_type)
        if kind is None:
            raise DeclarationError(f"unsupported resource type '{resource_type}'", filepath)

        for meta in _UNSUPPORTED_META & set(props):
            console.print(
                f"[yellow]Warning:[/yellow] {resource_type}.{name}: '{meta}' is not supported, ignoring"
            )

        depends_on = []
        raw_deps = props.get("depends_on") or []
        for dep in self.evaluate(raw_deps if isinstance(raw_deps, list) else [raw_deps], filepath):
            try:
                depends_on.append(Reference.parse(str(dep)).resource_id)
            except ValueError as exc:
                raise DeclarationError(f"{resource_type}.{name}: bad depends_on entry: {exc}", filepath)

        attributes = {
            k: self.evaluate(v, filepath)
            for k, v in props.items()
            if k not in _META_ARGS and k not in _UNSUPPORTED_META
        }
        return Resource(
            resource_type=resource_type,
            name=self.prefix + name,
            kind=kind,
            attributes=attributes,
            depends_on=depends_on,
            source_file=filepath,
        )

    def parse(self) -> List[Resource]:
        resources: List[Resource] = []
        for fp, data in self.documents:
            for name, body in _blocks(data, "module"):
                resources.extend(self._load_module(name, _unwrap(body) or {}, fp))
        for fp, data in self.documents:
            for resource_type, instances in _blocks(data, "resource"):
                maps = instances if isinstance(instances, list) else [instances]
                for instance_map in maps:
                    if not isinstance(instance_map, dict):
                        continue
                    for name, raw_props in instance_map.items():
                        resources.append(self._resource(resource_type, name, raw_props, fp))
        return resources

    def outputs(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for fp, data in self.documents:
            for name, body in _blocks(data, "output"):
                body = _unwrap(body) or {}
                if isinstance(body, dict) and "value" in body:
                    result[name] = self.evaluate(body["value"], fp)
        return result


def _tf_files(directory: str) -> List[str]:
    return sorted(
        os.path.join(directory, f)
        for f in os.listdir(directory)
        if f.endswith(".tf") and os.path.isfile(os.path.join(directory, f))
    )


def parse_file(filepath: str, variables: Optional[Dict[str, Any]] = None) -> List[Resource]:
    return _Scope([filepath], dict(variables or {})).parse()


def parse_directory(path: str, variables: Optional[Dict[str, Any]] = None) -> List[Resource]:
    """Parse every .tf file directly inside ``path`` as one configuration."""
    if os.path.isfile(path):
        return parse_file(path, variables)
    files = _tf_files(path)
    if not files:
        return []
    return _Scope(files, dict(variables or {})).parse()
