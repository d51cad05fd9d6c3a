from typing import Any, Dict, Optional, Type

from stackplan.providers.base import Provider
from stackplan.providers.local import LocalProvider

PROVIDERS: Dict[str, Type[Provider]] = {
    LocalProvider.name: LocalProvider,
}


def get_provider(name: str, options: Optional[Dict[str, Any]] = None) -> Provider:
    """Instantiate a registered provider by name."""
    try:
        cls = PROVIDERS[name]
    except KeyError:
        known = ", ".join(sorted(PROVIDERS))
        raise ValueError(f"Unknown provider '{name}' (available: {known})")
    return cls(**(options or {}))
