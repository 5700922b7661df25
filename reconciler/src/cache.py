from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from reconciler.src.errors import KeyComputationError


@dataclass(frozen=True)
class LiveObject:
    """Delete payload carrying the last state the watch delivered."""

    obj: Mapping[str, Any]


@dataclass(frozen=True)
class Tombstone:
    """Delete payload for an object that vanished while the watch was down.

    Produced on re-list when a cached key is missing from the fresh listing.
    ``obj`` is the last state held in the cache, so the delete can still be
    keyed and logged without the live value.
    """

    key: str
    obj: Any


@dataclass(frozen=True)
class Unrecognized:
    """Delete payload the informer could not classify."""

    value: Any


DeletePayload = Union[LiveObject, Tombstone, Unrecognized]


@dataclass(frozen=True)
class CachedObject:
    """Read-only view of a cached resource."""

    key: str
    namespace: str
    name: str
    kind: str
    resource_version: str | None
    obj: Mapping[str, Any]

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> CachedObject:
        metadata = _metadata(obj)
        key = meta_namespace_key(obj)
        return cls(
            key=key,
            namespace=metadata.get("namespace") or "",
            name=metadata["name"],
            kind=str(obj.get("kind") or ""),
            resource_version=metadata.get("resourceVersion"),
            obj=obj,
        )


def _metadata(obj: Any) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        raise KeyComputationError(f"object is not a resource mapping: {type(obj).__name__}")
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        raise KeyComputationError("object has no metadata")
    return metadata


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for namespaced objects and ``name`` otherwise.

    Tombstones carry their own key, which is returned unchanged.
    """
    if isinstance(obj, Tombstone):
        return obj.key
    metadata = _metadata(obj)
    name = metadata.get("name")
    if not name:
        raise KeyComputationError("object has no metadata.name")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key into ``(namespace, name)``; namespace is empty for cluster scope."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise KeyComputationError(f"unexpected key format: {key!r}")


def resource_version_of(obj: Any) -> str | None:
    if not isinstance(obj, Mapping):
        return None
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        return None
    version = metadata.get("resourceVersion")
    return str(version) if version else None


def is_older_version(candidate: str | None, current: str | None) -> bool:
    """Return True when *candidate* is strictly older than *current*.

    Resource versions are opaque strings; they are only compared when both
    parse as integers, which is what the API server hands out in practice.
    """
    if candidate is None or current is None:
        return False
    try:
        return int(candidate) < int(current)
    except ValueError:
        return False


class ThreadSafeStore:
    """Key to object map shared between the informer (writer) and workers (readers)."""

    def __init__(self) -> None:
        self._items: dict[str, Mapping[str, Any]] = {}
        self._lock = threading.RLock()

    def add(self, obj: Mapping[str, Any]) -> str:
        key = meta_namespace_key(obj)
        with self._lock:
            self._items[key] = obj
        return key

    update = add

    def delete(self, obj: Any) -> str:
        key = meta_namespace_key(obj)
        with self._lock:
            self._items.pop(key, None)
        return key

    def get_by_key(self, key: str) -> tuple[Mapping[str, Any] | None, bool]:
        with self._lock:
            item = self._items.get(key)
        return item, item is not None

    def list(self) -> list[Mapping[str, Any]]:
        with self._lock:
            return list(self._items.values())

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def replace(
        self, objs: Iterable[Mapping[str, Any]]
    ) -> tuple[dict[str, Mapping[str, Any]], dict[str, Mapping[str, Any]]]:
        """Swap the contents for a fresh listing.

        Returns ``(previous, current)`` keyed maps so the caller can work out
        which objects were added, changed, or removed while it was not watching.
        """
        current = {meta_namespace_key(obj): obj for obj in objs}
        with self._lock:
            previous = self._items
            self._items = dict(current)
        return previous, current

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
