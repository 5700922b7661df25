from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CustomObjectsApi

from reconciler.src.cache import CachedObject, split_meta_namespace_key
from reconciler.src.config import ControllerConfig
from reconciler.src.errors import CacheSyncAbort, KeyComputationError
from reconciler.src.informer import Informer
from reconciler.src.kube import CustomResourceSource
from reconciler.src.metrics import METRICS
from reconciler.src.translator import EventTranslator
from reconciler.src.workqueue import RateLimitingQueue, default_controller_rate_limiter


class ControllerState(enum.Enum):
    CREATED = "created"
    CACHE_WARMING = "cache_warming"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ReconcileRequest:
    """What a reconcile action is told about one dequeued key.

    ``exists`` is False when the object is no longer in the cache, i.e. it was
    deleted; ``obj`` then is None and ``kind`` is empty.
    """

    key: str
    namespace: str
    name: str
    kind: str
    exists: bool
    obj: Mapping[str, Any] | None = None


# Returning means success; raising means the key is retried with backoff.
ReconcileAction = Callable[[ReconcileRequest], None]


def simulated_work_action(
    seconds: float, sleep: Callable[[float], None] = time.sleep
) -> ReconcileAction:
    """Return an action that only waits *seconds*, standing in for real business logic."""

    def _action(request: ReconcileRequest) -> None:
        if seconds > 0:
            sleep(seconds)

    return _action


class Controller:
    """Runs the informer, waits for its first full sync, then drives the workers.

    Lifecycle: ``CREATED -> CACHE_WARMING -> RUNNING -> DRAINING -> STOPPED``.
    A stop that arrives while the cache is still warming goes straight to
    ``STOPPED`` without starting a worker and raises :class:`CacheSyncAbort`.

    Each worker takes one key at a time.  On success the key's backoff is
    forgotten; on failure the key goes back through the queue's rate limiter.
    With ``max_retries`` > 0 a key that has already been requeued that many
    times is dropped instead.  Nothing a single key does stops a worker.

    On stop the queue is shut down rather than cleared: keys already queued,
    and keys re-added while being processed, are still worked off before the
    workers exit.  ``STOPPED`` is only reached once every worker has exited;
    workers still busy after ``shutdown_timeout_seconds`` leave the controller
    in ``DRAINING`` and the last of them to finish records ``STOPPED``.
    """

    def __init__(
        self,
        informer: Informer,
        queue: RateLimitingQueue,
        action: ReconcileAction,
        max_retries: int = 0,
        shutdown_timeout_seconds: float = 30,
        sync_poll_interval_seconds: float = 0.1,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.informer = informer
        self.queue = queue
        self.action = action
        self.max_retries = max_retries
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.sync_poll_interval_seconds = sync_poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._stop_event = threading.Event()
        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._workers: list[threading.Thread] = []
        self._live_workers = 0
        self._drain_timed_out = False
        self._informer_thread: threading.Thread | None = None
        self._publish_state(ControllerState.CREATED)

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    @staticmethod
    def _publish_state(current: ControllerState) -> None:
        for state in ControllerState:
            METRICS.controller_state.labels(state=state.value).set(1 if state is current else 0)

    def _set_state(self, new_state: ControllerState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = new_state
        self._publish_state(new_state)
        self.logger.info("CONTROLLER: %s -> %s", previous.value, new_state.value)

    @property
    def workers(self) -> list[threading.Thread]:
        return list(self._workers)

    def request_stop(self) -> None:
        """Ask the controller to shut down; a request made before :meth:`run` is kept."""
        with self._state_lock:
            self._stop_event.set()

    def _informer_alive(self) -> bool:
        return self._informer_thread is None or self._informer_thread.is_alive()

    def wait_for_cache_sync(self, stop: threading.Event) -> bool:
        """Poll until the informer has synced; False if stop came first or the informer died."""
        while True:
            if stop.is_set():
                return False
            if self.informer.has_synced():
                return True
            if not self._informer_alive():
                self.logger.error("Informer exited before the cache synced")
                return False
            stop.wait(timeout=self.sync_poll_interval_seconds)

    def run(self, workers: int, stop_event: threading.Event | None = None) -> None:
        """Start the informer and *workers* worker threads; block until stopped."""
        if workers < 1:
            raise ValueError("workers must be >= 1")
        with self._state_lock:
            if self._state is not ControllerState.CREATED:
                raise RuntimeError(f"controller cannot be started from state {self._state.value}")
            if stop_event is not None:
                if self._stop_event.is_set():
                    stop_event.set()
                self._stop_event = stop_event
            stop = self._stop_event

        self._set_state(ControllerState.CACHE_WARMING)
        self._informer_thread = self.informer.start(stop)

        if not self.wait_for_cache_sync(stop):
            self.logger.error("Timeout waiting for cache sync")
            self.informer.stop()
            self.queue.shut_down()
            self._set_state(ControllerState.STOPPED)
            raise CacheSyncAbort("controller stopped before the initial cache sync completed")

        self._set_state(ControllerState.RUNNING)
        self.ready.set()
        self.logger.info("CONTROLLER: Started successfully with %d worker(s)", workers)

        for worker_id in range(1, workers + 1):
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker_id,),
                name=f"worker-{worker_id}",
                daemon=True,
            )
            self._workers.append(thread)
            with self._state_lock:
                self._live_workers += 1
            thread.start()

        while not stop.wait(timeout=1.0):
            if not self._informer_alive():
                self.logger.error("Informer exited unexpectedly; shutting down")
                break

        self._drain()

    def _drain(self) -> None:
        self._set_state(ControllerState.DRAINING)
        self.ready.clear()
        self.informer.stop()

        deadline = time.monotonic() + self.shutdown_timeout_seconds
        if not self.queue.shut_down_with_drain(timeout=self.shutdown_timeout_seconds):
            self.logger.warning(
                "Queue %s not drained within %ss", self.queue.name, self.shutdown_timeout_seconds
            )
        for thread in self._workers:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        if self._informer_thread is not None:
            self._informer_thread.join(timeout=max(0.0, deadline - time.monotonic()))

        with self._state_lock:
            remaining = self._live_workers
            self._drain_timed_out = remaining > 0
        if remaining:
            still_running = [thread.name for thread in self._workers if thread.is_alive()]
            self.logger.error(
                "Workers still busy after %ss, staying in %s until they exit: %s",
                self.shutdown_timeout_seconds,
                ControllerState.DRAINING.value,
                ", ".join(still_running),
            )
            return

        self._set_state(ControllerState.STOPPED)

    def _worker_exited(self) -> None:
        with self._state_lock:
            self._live_workers -= 1
            last_straggler = self._drain_timed_out and self._live_workers == 0
        if last_straggler:
            self._set_state(ControllerState.STOPPED)

    def _run_worker(self, worker_id: int) -> None:
        self.logger.info("WORKER: Started (id=%d)", worker_id)
        try:
            while True:
                try:
                    if not self.process_next_work_item(worker_id):
                        break
                except Exception:
                    self.logger.exception(
                        "WORKER: Unexpected error in worker loop (id=%d)", worker_id
                    )
            self.logger.info("WORKER: Shutting down (id=%d)", worker_id)
        finally:
            self._worker_exited()

    def _reconcile(self, worker_id: int, key: str) -> None:
        namespace, name = split_meta_namespace_key(key)
        obj, exists = self.informer.get_by_key(key)
        cached = CachedObject.from_object(obj) if exists else None

        if cached is None:
            self.logger.info(
                "WORKER: Processing deleted resource (worker=%d, resource=%s, namespace=%s, name=%s)",
                worker_id,
                key,
                namespace,
                name,
            )
        else:
            self.logger.info(
                "WORKER: Processing resource (worker=%d, resource=%s, namespace=%s, name=%s, kind=%s)",
                worker_id,
                key,
                namespace,
                name,
                cached.kind,
            )

        self.action(
            ReconcileRequest(
                key=key,
                namespace=namespace,
                name=name,
                kind=cached.kind if cached is not None else "",
                exists=cached is not None,
                obj=cached.obj if cached is not None else None,
            )
        )

    def process_next_work_item(self, worker_id: int) -> bool:
        """Handle one key from the queue.  Returns False once the queue is shut down."""
        key, shutting_down = self.queue.get()
        if shutting_down or key is None:
            return False

        self.logger.info("QUEUE: Item dequeued (worker=%d, resource=%s)", worker_id, key)
        try:
            self._reconcile(worker_id, key)
        except KeyComputationError:
            self.queue.forget(key)
            self.queue.done(key)
            METRICS.reconcile_dropped_total.labels(reason="invalid_key").inc()
            self.logger.exception("WORKER: Invalid resource key (worker=%d, key=%s)", worker_id, key)
            return True
        except Exception as exc:
            self.queue.done(key)
            self._handle_failure(worker_id, key, exc)
            return True

        self.queue.forget(key)
        self.queue.done(key)
        METRICS.reconcile_total.labels(outcome="success").inc()
        self.logger.info(
            "QUEUE: Item processed successfully (worker=%d, resource=%s)", worker_id, key
        )
        return True

    def _handle_failure(self, worker_id: int, key: str, exc: Exception) -> None:
        METRICS.reconcile_total.labels(outcome="error").inc()
        requeues = self.queue.num_requeues(key)
        if self.max_retries and requeues >= self.max_retries:
            self.queue.forget(key)
            METRICS.reconcile_dropped_total.labels(reason="max_retries").inc()
            self.logger.error(
                "WORKER: Giving up on %s after %d retries (worker=%d)",
                key,
                requeues,
                worker_id,
                exc_info=exc,
            )
            return

        self.logger.error(
            "WORKER: Error processing item (worker=%d, resource=%s, retry=%d)",
            worker_id,
            key,
            requeues + 1,
            exc_info=exc,
        )
        self.queue.add_rate_limited(key)


def build_controller(
    config: ControllerConfig,
    api: CustomObjectsApi,
    action: ReconcileAction | None = None,
) -> Controller:
    """Wire a source, informer, queue, and translator into a :class:`Controller`."""
    source = CustomResourceSource(
        api=api,
        group=config.group,
        version=config.version,
        plural=config.plural,
        namespace=config.namespace,
    )
    informer = Informer(source, watch_timeout_seconds=config.watch_timeout_seconds)
    queue = RateLimitingQueue(
        name=config.queue_name,
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
            qps=config.rate_limit_qps,
            burst=config.rate_limit_burst,
        ),
    )
    informer.add_event_handler(EventTranslator(queue))
    return Controller(
        informer=informer,
        queue=queue,
        action=action or simulated_work_action(config.simulated_work_seconds),
        max_retries=config.max_retries,
        shutdown_timeout_seconds=config.shutdown_timeout_seconds,
    )
