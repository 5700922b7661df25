from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException

from reconciler.src.cache import (
    DeletePayload,
    LiveObject,
    ThreadSafeStore,
    Tombstone,
    Unrecognized,
    is_older_version,
    meta_namespace_key,
    resource_version_of,
)
from reconciler.src.errors import CacheLookupError, KeyComputationError
from reconciler.src.metrics import METRICS

_AUTH_FAILURE_STATUSES = {401, 403}


class ResourceSource(Protocol):
    def list(self) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[dict[str, Any]]: ...

    def stop(self) -> None: ...


class ResourceEventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, payload: DeletePayload) -> None: ...


@dataclass
class ResourceEventHandlerFuncs:
    """Adapter so plain callables can be registered as an event handler."""

    add_func: Callable[[Any], None] | None = None
    update_func: Callable[[Any, Any], None] | None = None
    delete_func: Callable[[DeletePayload], None] | None = None

    def on_add(self, obj: Any) -> None:
        if self.add_func is not None:
            self.add_func(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if self.update_func is not None:
            self.update_func(old, new)

    def on_delete(self, payload: DeletePayload) -> None:
        if self.delete_func is not None:
            self.delete_func(payload)


class Informer:
    """Keeps a local cache of one resource type in step with the API server.

    ``run`` lists the collection, replaces the store, and then watches from the
    listing's ``resourceVersion``.  The store is always written before
    handlers are told about a change, so anything a handler enqueues will be
    read back at that state or newer.

    Recovery is internal to ``run``:

    * The initial list is retried with jittered exponential backoff
      (1 s doubling to a 30 s cap) until it succeeds or stop is requested.
    * A watch that ends on its server-side timeout is reopened from the last
      seen ``resourceVersion`` straight away.
    * ``410 Gone`` means the server compacted past that version; the informer
      re-lists, and any cached object missing from the fresh listing is
      reported as a :class:`Tombstone` delete because its real delete event
      was never seen.
    * ``401`` / ``403`` are treated as RBAC/auth misconfiguration and end the
      loop instead of retrying forever.
    * Anything else backs off and reconnects.

    ``has_synced`` turns true once, after the first listing has been applied
    and delivered to handlers, and stays true across later re-lists.
    """

    def __init__(
        self,
        source: ResourceSource,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.store = ThreadSafeStore()
        self._handlers: list[ResourceEventHandler] = []
        self._dispatch_lock = threading.RLock()
        self._synced = threading.Event()
        self._stop_event = threading.Event()
        self._stop_lock = threading.Lock()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        """Register *handler*; if the cache is already synced it is replayed as adds."""
        with self._dispatch_lock:
            self._handlers.append(handler)
            if not self._synced.is_set():
                return
            for obj in self.store.list():
                self._call_handler(handler, "add", obj)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        try:
            return self.store.get_by_key(key)
        except Exception as exc:
            raise CacheLookupError(f"cache lookup failed for {key}") from exc

    def stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream.

        A stop requested before :meth:`run` starts is carried over to the event
        ``run`` is given.
        """
        with self._stop_lock:
            self._stop_event.set()
        self.source.stop()

    def start(self, stop_event: threading.Event | None = None) -> threading.Thread:
        thread = threading.Thread(
            target=self.run, args=(stop_event,), name="informer", daemon=True
        )
        thread.start()
        return thread

    def _call_handler(self, handler: ResourceEventHandler, kind: str, *args: Any) -> None:
        try:
            if kind == "add":
                handler.on_add(*args)
            elif kind == "update":
                handler.on_update(*args)
            else:
                handler.on_delete(*args)
        except Exception:
            self.logger.exception("Event handler %r failed on %s notification", handler, kind)

    def _dispatch(self, kind: str, *args: Any) -> None:
        with self._dispatch_lock:
            for handler in list(self._handlers):
                self._call_handler(handler, kind, *args)

    def _backoff_wait(self, backoff_seconds: float) -> None:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop_event.wait(timeout=jittered)

    def _list_and_replace(self) -> str | None:
        """List the collection, swap it into the store, and notify handlers of the difference."""
        items, resource_version = self.source.list()
        keyed: list[Mapping[str, Any]] = []
        for item in items:
            try:
                meta_namespace_key(item)
            except KeyComputationError:
                self.logger.warning("Skipping listed object without usable identity: %r", item)
                continue
            keyed.append(item)

        previous, current = self.store.replace(keyed)
        METRICS.cached_objects.set(len(current))

        for key, obj in current.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            elif resource_version_of(old) != resource_version_of(obj):
                self._dispatch("update", old, obj)
        for key, old in previous.items():
            if key not in current:
                self.logger.info("Object %s disappeared while not watching; delivering tombstone", key)
                self._dispatch("delete", Tombstone(key=key, obj=old))
        return resource_version

    def _handle_event(self, event: Mapping[str, Any]) -> str | None:
        """Apply one watch event to the store and notify handlers.

        Returns the resourceVersion to resume from, or None to keep the old one.
        """
        event_type = str(event.get("type", ""))
        obj = event.get("object")

        if event_type == "ERROR":
            raw = event.get("raw_object", obj)
            status = raw.get("code") if isinstance(raw, Mapping) else None
            message = raw.get("message") if isinstance(raw, Mapping) else raw
            raise ApiException(status=status or 500, reason=str(message))

        if event_type == "BOOKMARK":
            return resource_version_of(obj)

        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            self.logger.debug("Ignoring watch event of type %r", event_type)
            return None

        if not isinstance(obj, Mapping):
            if event_type == "DELETED":
                self._dispatch("delete", Unrecognized(value=obj))
            else:
                self.logger.warning("Ignoring %s watch event without an object payload", event_type)
            return None

        version = resource_version_of(obj)
        try:
            key = meta_namespace_key(obj)
        except KeyComputationError:
            # Not storable; handlers still hear about it so the drop is logged once.
            if event_type == "DELETED":
                self._dispatch("delete", LiveObject(obj=obj))
            elif event_type == "MODIFIED":
                self._dispatch("update", None, obj)
            else:
                self._dispatch("add", obj)
            return version

        old, exists = self.store.get_by_key(key)
        if exists and is_older_version(version, resource_version_of(old)):
            self.logger.debug(
                "Ignoring stale %s event for %s (resourceVersion %s < %s)",
                event_type,
                key,
                version,
                resource_version_of(old),
            )
            return None

        if event_type == "DELETED":
            self.store.delete(obj)
            METRICS.cached_objects.set(len(self.store))
            self._dispatch("delete", LiveObject(obj=obj))
        else:
            self.store.update(obj)
            METRICS.cached_objects.set(len(self.store))
            if exists:
                self._dispatch("update", old, obj)
            else:
                self._dispatch("add", obj)
        return version

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, mark synced, then watch and recover until stop is requested."""
        with self._stop_lock:
            if stop_event is not None:
                if self._stop_event.is_set():
                    stop_event.set()
                self._stop_event = stop_event
            stop = self._stop_event

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not stop.is_set():
            try:
                resource_version = self._list_and_replace()
                break
            except ApiException as exc:
                if exc.status in _AUTH_FAILURE_STATUSES:
                    self.logger.error(
                        "Kubernetes API access denied during initial list of %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        getattr(self.source, "description", "resources"),
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list")
                METRICS.watch_errors_total.inc()

            self._backoff_wait(startup_backoff_seconds)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if stop.is_set():
            return

        self._synced.set()
        self.logger.info(
            "Cache synced with %d object(s); watching from resourceVersion %s",
            len(self.store),
            resource_version,
        )

        # Reset to 1 after every clean stream end; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False

        while not stop.is_set():
            if needs_relist:
                try:
                    resource_version = self._list_and_replace()
                    needs_relist = False
                    METRICS.relists_total.inc()
                except ApiException as exc:
                    if exc.status in _AUTH_FAILURE_STATUSES:
                        self.logger.error(
                            "Kubernetes API access denied during re-list (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        return
                    self.logger.exception("Failed to re-list after expired watch")
                    METRICS.watch_errors_total.inc()
                    self._backoff_wait(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error during re-list")
                    METRICS.watch_errors_total.inc()
                    self._backoff_wait(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            if watch_stream_count > 0:
                METRICS.watch_reconnects_total.inc()
            watch_stream_count += 1
            stream: Iterator[dict[str, Any]] | None = None
            try:
                stream = self.source.watch(
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    resource_version = self._handle_event(event) or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    needs_relist = True
                    continue

                if exc.status in _AUTH_FAILURE_STATUSES:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                self._backoff_wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                self._backoff_wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                close = getattr(stream, "close", None)
                if close is not None:
                    close()

        self.logger.info("Informer stopped")
