from abc import ABC, abstractmethod
from typing import Any, Dict

from stackplan.models.resource import ResourceKind


class Provider(ABC):
    """
    Remote API the executor drives.

    ``create`` and ``update`` return the provider's outputs; the outputs of
    ``create`` must carry an ``id``. ``describe`` raises ResourceNotFoundError
    for ids the provider does not know.
    """

    name = "base"

    @abstractmethod
    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def destroy(self, provider_id: str) -> None:
        ...

    @abstractmethod
    def describe(self, provider_id: str) -> Dict[str, Any]:
        ...
