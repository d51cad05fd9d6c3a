"""
Settings loaded from stackplan.yaml; CLI options override the file, the file
overrides the defaults.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from stackplan.errors import StackplanError
from stackplan.executor import DEFAULT_CONCURRENCY
from stackplan.models.resource import ResourceKind
from stackplan.planner import DEFAULT_POLICIES, ReplacePolicy
from stackplan.store import DEFAULT_STATE_DIR

DEFAULT_CONFIG_FILE = "stackplan.yaml"


class ConfigError(StackplanError):
    pass


@dataclass
class Settings:
    state_dir: str = DEFAULT_STATE_DIR
    concurrency: int = DEFAULT_CONCURRENCY
    provider: str = "local"
    provider_options: Dict[str, Any] = field(default_factory=dict)
    policies: Dict[ResourceKind, ReplacePolicy] = field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )


def _policy(kind_name: str, raw: Any) -> ReplacePolicy:
    if not isinstance(raw, dict):
        raise ConfigError(f"replace_policy.{kind_name} must be a mapping")
    if "force_new" in raw:
        return ReplacePolicy(force_new=frozenset(raw.get("force_new") or []))
    return ReplacePolicy(in_place=frozenset(raw.get("in_place") or []))


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Read ``path`` (or ./stackplan.yaml when it exists). A missing default file
    yields the defaults; a missing explicit file is an error.
    """
    settings = Settings()
    config_file = path or DEFAULT_CONFIG_FILE
    if not os.path.exists(config_file):
        if path:
            raise ConfigError(f"config file '{path}' does not exist")
        return settings

    try:
        with open(config_file, "r") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read {config_file}: {exc}")
    if not isinstance(config, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    settings.state_dir = config.get("state_dir", settings.state_dir)
    try:
        settings.concurrency = int(config.get("concurrency", settings.concurrency))
    except (TypeError, ValueError):
        raise ConfigError(f"{config_file}: concurrency must be an integer")

    provider = config.get("provider") or {}
    if isinstance(provider, str):
        provider = {"name": provider}
    settings.provider = provider.get("name", settings.provider)
    settings.provider_options = dict(provider.get("options") or {})

    for kind_name, raw in (config.get("replace_policy") or {}).items():
        try:
            kind = ResourceKind(kind_name)
        except ValueError:
            raise ConfigError(f"replace_policy: unknown kind '{kind_name}'")
        settings.policies[kind] = _policy(kind_name, raw)

    return settings
