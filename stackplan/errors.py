"""
Error taxonomy.

GraphError subclasses are raised before any provider call is made and are
fatal until the declarations are fixed. Everything raised while executing a
plan is recorded against the single action that caused it.
"""
from typing import Iterable, List, Optional


class StackplanError(Exception):
    """Base class for every error raised by stackplan."""


class GraphError(StackplanError):
    """The desired graph cannot be built or ordered."""


class DeclarationError(GraphError):
    """A declaration file is unreadable, malformed or names an unsupported type."""

    def __init__(self, message: str, source_file: str = ""):
        self.source_file = source_file
        if source_file:
            message = f"{source_file}: {message}"
        super().__init__(message)


class DuplicateResourceError(GraphError):
    def __init__(self, resource_id: str, sources: Iterable[str] = ()):
        self.resource_id = resource_id
        self.sources = [s for s in sources if s]
        where = f" (declared in {', '.join(self.sources)})" if self.sources else ""
        super().__init__(f"Resource '{resource_id}' is declared more than once{where}")


class UndeclaredReferenceError(GraphError):
    def __init__(self, resource_id: str, attribute: str, target: str):
        self.resource_id = resource_id
        self.attribute = attribute
        self.target = target
        super().__init__(
            f"Resource '{resource_id}' attribute '{attribute}' references "
            f"undeclared resource '{target}'"
        )


class CyclicDependencyError(GraphError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class ProviderActionError(StackplanError):
    """A single provider call failed. Re-running apply retries it."""

    def __init__(self, action_key: str, cause: Exception):
        self.action_key = action_key
        self.cause = cause
        super().__init__(f"{action_key}: {cause}")


class ResourceNotFoundError(StackplanError):
    """Raised by providers when an id is not known to them."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Provider has no resource with id '{provider_id}'")


class ReferenceResolutionError(StackplanError):
    def __init__(self, expression: str, reason: str):
        self.expression = expression
        super().__init__(f"Cannot resolve '${{{expression}}}': {reason}")


class StateCorruptionError(StackplanError):
    def __init__(self, resource_id: str, detail: str, provider_id: Optional[str] = None):
        self.resource_id = resource_id
        self.provider_id = provider_id
        super().__init__(f"State for '{resource_id}' is not trustworthy: {detail}")


class StateLockError(StackplanError):
    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        super().__init__(
            f"State is locked by another run ({lock_path}). "
            "Remove the lock file if no other run is active."
        )


class StateCommitError(StackplanError):
    """The provider made a change that could not be written to state."""

    def __init__(self, resource_id: str, provider_id: str, cause: Exception):
        self.resource_id = resource_id
        self.provider_id = provider_id
        self.cause = cause
        super().__init__(
            f"{resource_id}: created '{provider_id}' but could not record it ({cause}); "
            "the object is not tracked and must be removed by hand"
        )
