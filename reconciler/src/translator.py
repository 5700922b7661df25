from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, assert_never

from reconciler.src.cache import (
    DeletePayload,
    LiveObject,
    Tombstone,
    Unrecognized,
    meta_namespace_key,
)
from reconciler.src.errors import KeyComputationError, TombstoneDecodeError
from reconciler.src.metrics import METRICS


class KeyQueue(Protocol):
    def add(self, key: str) -> None: ...


def _describe(obj: Mapping[str, Any]) -> tuple[str, str, str]:
    metadata = obj.get("metadata") or {}
    return (
        str(metadata.get("name") or ""),
        str(metadata.get("namespace") or ""),
        str(obj.get("kind") or ""),
    )


class EventTranslator:
    """Turns informer notifications into queue keys.

    Runs on the informer's notification thread, so it never blocks: each
    notification is either turned into exactly one ``queue.add(key)`` or
    logged and dropped.
    """

    def __init__(self, queue: KeyQueue, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

    def _enqueue(self, event: str, obj: Mapping[str, Any], key: str) -> None:
        name, namespace, kind = _describe(obj)
        self.logger.info(
            "EVENT: Resource %s -> Queueing (resource=%s, name=%s, namespace=%s, kind=%s)",
            event,
            key,
            name,
            namespace,
            kind,
        )
        METRICS.events_total.labels(event=event).inc()
        self.queue.add(key)

    def _drop(self, event: str, exc: Exception, obj: Any) -> None:
        self.logger.error("Dropping %s notification: %s (object=%r)", event, exc, obj)
        METRICS.events_dropped_total.labels(event=event).inc()

    def on_add(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except KeyComputationError as exc:
            self._drop("added", exc, obj)
            return
        self._enqueue("added", obj, key)

    def on_update(self, old: Any, new: Any) -> None:
        try:
            key = meta_namespace_key(new)
        except KeyComputationError as exc:
            self._drop("updated", exc, new)
            return
        self._enqueue("updated", new, key)

    def on_delete(self, payload: DeletePayload) -> None:
        try:
            obj, key = self._resolve_delete(payload)
        except (KeyComputationError, TombstoneDecodeError) as exc:
            self._drop("deleted", exc, payload)
            return
        self._enqueue("deleted", obj, key)

    @staticmethod
    def _resolve_delete(payload: DeletePayload) -> tuple[Mapping[str, Any], str]:
        """Return the last-known object and its key for a delete notification."""
        match payload:
            case LiveObject(obj=obj):
                return obj, meta_namespace_key(obj)
            case Tombstone(key=tombstone_key, obj=obj):
                if not isinstance(obj, Mapping):
                    raise TombstoneDecodeError(
                        f"tombstone for {tombstone_key!r} contained a non-resource "
                        f"object of type {type(obj).__name__}"
                    )
                try:
                    return obj, meta_namespace_key(obj)
                except KeyComputationError as exc:
                    raise TombstoneDecodeError(
                        f"tombstone for {tombstone_key!r} has no recoverable identity"
                    ) from exc
            case Unrecognized(value=value):
                raise TombstoneDecodeError(
                    f"error decoding delete notification of type {type(value).__name__}"
                )
            case _:
                assert_never(payload)
