"""
fleet_hub/shared/store.py
──────────────────────────
InMemoryStore: the hub's view of the backing API store.

Watching and persisting objects belongs to an external collaborator; this
module only fixes the contract the core relies on, and provides an
in-memory implementation used by the service wiring and the tests.

Contract
─────────
  • get()/list() return deep copies. Mutating a returned object changes
    nothing until it is written back with update().
  • update() is conditional: the caller's resource_version must equal the
    stored one, otherwise ConflictError. On success the stored copy gets
    resource_version + 1. The store never touches generation.
  • delete() of an object with finalizers only stamps deletion_timestamp.
    The object disappears when an update() leaves it with no finalizers.
  • update_with_retry() wraps the re-read/re-apply loop callers use to
    recover from a conflict on one object without redoing anything else.
  • writes counts every successful mutation. Tests use it to prove that an
    unchanged reconcile issues no writes.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from fleet_hub.shared.models import HubObject, utcnow

T = TypeVar("T", bound=HubObject)


class NotFoundError(Exception):
    """Raised when the requested object does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} not found")


class AlreadyExistsError(Exception):
    """Raised by create() when an object with the same kind/namespace/name exists."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} already exists")


class ConflictError(Exception):
    """
    Raised by update() when the caller's copy is stale.

    Callers recover by re-reading the object and re-applying their change.
    A conflict is transient and scoped to the one object.
    """

    def __init__(self, kind: str, key: str, expected: int, actual: int) -> None:
        self.kind = kind
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {key!r} was modified concurrently "
            f"(resource_version {expected} is stale, current is {actual})"
        )


_Index = Tuple[str, str, str]   # (kind, namespace, name)


class InMemoryStore:
    """Thread-safe, versioned object store keyed by (kind, namespace, name)."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: Dict[_Index, HubObject] = {}
        self.writes: int = 0

    # ── Reads ──────────────────────────────────────────────────────────────────

    def get(self, kind: Type[T], name: str, namespace: str = "") -> T:
        with self._lock:
            obj = self._objects.get((kind.__name__, namespace, name))
            if obj is None:
                raise NotFoundError(kind.__name__, _fmt(name, namespace))
            return obj.model_copy(deep=True)  # type: ignore[return-value]

    def try_get(self, kind: Type[T], name: str, namespace: str = "") -> Optional[T]:
        try:
            return self.get(kind, name, namespace)
        except NotFoundError:
            return None

    def list(
        self,
        kind: Type[T],
        namespace: Optional[str] = None,
        predicate: Optional[Callable[[T], bool]] = None,
    ) -> List[T]:
        """All objects of a kind, sorted by (namespace, name). namespace=None means any."""
        with self._lock:
            matches = [
                obj.model_copy(deep=True)
                for (k, ns, _), obj in self._objects.items()
                if k == kind.__name__ and (namespace is None or ns == namespace)
            ]
        matches.sort(key=lambda o: (o.namespace, o.name))
        if predicate is not None:
            matches = [o for o in matches if predicate(o)]  # type: ignore[arg-type]
        return matches  # type: ignore[return-value]

    # ── Writes ─────────────────────────────────────────────────────────────────

    def create(self, obj: T) -> T:
        index = _index(obj)
        with self._lock:
            if index in self._objects:
                raise AlreadyExistsError(index[0], _fmt(obj.name, obj.namespace))
            stored = obj.model_copy(deep=True)
            stored.resource_version = 1
            self._objects[index] = stored
            self.writes += 1
            return stored.model_copy(deep=True)

    def update(self, obj: T) -> T:
        """
        Conditionally replace the stored object.

        Returns the stored copy. If the update leaves a deleting object with
        no finalizers, the object is removed and the returned copy is the
        final state it was removed in.
        """
        index = _index(obj)
        with self._lock:
            current = self._objects.get(index)
            if current is None:
                raise NotFoundError(index[0], _fmt(obj.name, obj.namespace))
            if current.resource_version != obj.resource_version:
                raise ConflictError(
                    index[0], _fmt(obj.name, obj.namespace),
                    obj.resource_version, current.resource_version,
                )
            stored = obj.model_copy(deep=True)
            stored.deletion_timestamp = current.deletion_timestamp
            stored.resource_version = current.resource_version + 1
            self.writes += 1
            if stored.is_deleting and not stored.finalizers:
                del self._objects[index]
            else:
                self._objects[index] = stored
            return stored.model_copy(deep=True)

    def delete(self, kind: Type[T], name: str, namespace: str = "") -> None:
        """Delete, or mark for deletion when finalizers are present. Missing objects are ignored."""
        index = (kind.__name__, namespace, name)
        with self._lock:
            current = self._objects.get(index)
            if current is None:
                return
            if current.finalizers:
                if current.deletion_timestamp is None:
                    current.deletion_timestamp = utcnow()
                    current.resource_version += 1
                    self.writes += 1
                return
            del self._objects[index]
            self.writes += 1


def _index(obj: HubObject) -> _Index:
    return (type(obj).__name__, obj.namespace, obj.name)


def _fmt(name: str, namespace: str) -> str:
    return f"{namespace}/{name}" if namespace else name


def update_with_retry(
    store: InMemoryStore,
    obj: T,
    mutate: Callable[[T], bool],
    max_attempts: int = 5,
) -> Optional[T]:
    """
    Apply mutate(obj) and write it back, retrying on ConflictError.

    mutate edits the object in place and returns True when it changed
    something. On a conflict the object is re-read and mutate re-applied,
    so mutate must be safe to call on a fresh copy.

    Returns the stored object, or None when mutate reported no change or
    the object disappeared. Re-raises the last ConflictError once
    max_attempts writes have all lost the race.
    """
    current: Optional[T] = obj
    for attempt in Retrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(max(1, max_attempts)),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                current = store.try_get(type(obj), obj.name, obj.namespace)
            if current is None or not mutate(current):
                return None
            return store.update(current)
    return None
