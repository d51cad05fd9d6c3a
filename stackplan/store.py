"""
State stores.

Every successful action commits or removes exactly one entry straight away,
so the store always matches the set of actions that actually completed.
"""
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator

from stackplan.errors import StateCorruptionError, StateLockError
from stackplan.models.state import ResourceState, Snapshot

DEFAULT_STATE_DIR = os.path.join(".stackplan", "state")
_LOCK_NAME = ".lock"


class StateStore(ABC):
    @abstractmethod
    def load(self) -> Snapshot:
        """Return every recorded resource keyed by resource id."""

    @abstractmethod
    def commit(self, resource_id: str, state: ResourceState) -> None:
        ...

    @abstractmethod
    def remove(self, resource_id: str) -> None:
        ...

    @contextmanager
    def lock(self) -> Iterator[None]:
        yield


class MemoryStateStore(StateStore):
    """Keeps serialised copies in a dict; handy for tests and embedding."""

    def __init__(self) -> None:
        self._entries: Dict[str, dict] = {}
        self._mutex = threading.Lock()

    def load(self) -> Snapshot:
        with self._mutex:
            return {rid: ResourceState.from_dict(json.loads(raw)) for rid, raw in self._entries.items()}

    def commit(self, resource_id: str, state: ResourceState) -> None:
        raw = json.dumps(state.to_dict())
        with self._mutex:
            self._entries[resource_id] = raw

    def remove(self, resource_id: str) -> None:
        with self._mutex:
            self._entries.pop(resource_id, None)


class FileStateStore(StateStore):
    """One JSON document per resource, replaced atomically on every commit."""

    def __init__(self, directory: str = DEFAULT_STATE_DIR):
        self.directory = directory

    def _path(self, resource_id: str) -> str:
        return os.path.join(self.directory, f"{resource_id}.json")

    def load(self) -> Snapshot:
        snapshot: Snapshot = {}
        if not os.path.isdir(self.directory):
            return snapshot

        for fname in sorted(os.listdir(self.directory)):
            if not fname.endswith(".json"):
                continue
            resource_id = fname[: -len(".json")]
            try:
                with open(os.path.join(self.directory, fname), encoding="utf-8") as fh:
                    state = ResourceState.from_dict(json.load(fh))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise StateCorruptionError(resource_id, f"unreadable state file {fname}: {exc}")
            if state.resource_id != resource_id:
                raise StateCorruptionError(
                    resource_id, f"state file {fname} describes '{state.resource_id}'"
                )
            snapshot[resource_id] = state
        return snapshot

    def commit(self, resource_id: str, state: ResourceState) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(state.to_dict(), fh, indent=2, sort_keys=True)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path(resource_id))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def remove(self, resource_id: str) -> None:
        try:
            os.unlink(self._path(resource_id))
        except FileNotFoundError:
            pass

    @contextmanager
    def lock(self) -> Iterator[None]:
        os.makedirs(self.directory, exist_ok=True)
        lock_path = os.path.join(self.directory, _LOCK_NAME)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise StateLockError(lock_path)
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        try:
            yield
        finally:
            os.unlink(lock_path)
