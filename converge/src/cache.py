from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


class CacheLookupError(LookupError):
    """Raised when a cache operation is given an unusable key or value."""


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for a resource whose deletion was inferred, not observed.

    Emitted when a re-list no longer contains a key the cache still holds,
    so the delete notification carries only the last known value.
    """

    key: str
    obj: Any


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for an object with Kubernetes-style metadata.

    Cluster-scoped objects (empty namespace) are keyed by name alone.
    """
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        raise CacheLookupError(f"object has no metadata: {obj!r}")

    name = getattr(metadata, "name", None)
    if not name:
        raise CacheLookupError(f"object metadata has no name: {obj!r}")

    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def deletion_handling_key(obj: Any, key_fn: Callable[[Any], str] = meta_namespace_key) -> str:
    """Like *key_fn*, but a tombstone yields the key it was recorded under."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return key_fn(obj)


def _check_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise CacheLookupError(f"invalid cache key: {key!r}")
    return key


class ResourceCache:
    """Thread-safe mapping from resource key to the latest known value.

    Values are deep-copied on write, so a value handed to a reader is a
    snapshot that later writes never mutate.
    """

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[Any, bool]:
        key = _check_key(key)
        with self._lock:
            if key in self._items:
                return self._items[key], True
        return None, False

    def put(self, key: str, value: Any) -> None:
        key = _check_key(key)
        if value is None:
            raise CacheLookupError(f"refusing to store None for key {key!r}")
        snapshot = copy.deepcopy(value)
        with self._lock:
            self._items[key] = snapshot

    def delete(self, key: str) -> None:
        key = _check_key(key)
        with self._lock:
            self._items.pop(key, None)

    def list_all(self) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self._items.items())

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
