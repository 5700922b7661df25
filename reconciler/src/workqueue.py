from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: str) -> float: ...

    def forget(self, item: str) -> None: ...

    def num_requeues(self, item: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the key.  The
    counter only goes back to zero through :meth:`forget`, so a key that keeps
    failing keeps backing off no matter how often it is re-added in between.
    """

    def __init__(self, base_delay: float, max_delay: float) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # Past 2**62 the product cannot fit a float anyway.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key (``qps`` refill, ``burst`` capacity)."""

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff bounded by an overall token bucket.

    Only the exponential part is per key, so only it grows monotonically until
    :meth:`forget`.  The bucket is shared by every key: once it is empty it can
    hand one key a longer delay than that key's next failure gets after the
    bucket refills.  Each delay is still at least the per-key backoff.
    """
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited re-adds.

    A key is in at most one of two places at a time: pending in ``_queue`` or
    being processed (``_processing``).  ``_dirty`` holds every key that needs
    another processing cycle; adding a key that is already dirty is a no-op,
    and adding a key that is being processed only marks it dirty so
    :meth:`done` puts it back exactly once.

    Delayed adds wait in a due-time heap and are moved into the queue by
    :meth:`get`, so no background thread is needed.  A key waiting in the heap
    keeps its earliest due time.

    After :meth:`shut_down`, :meth:`add` is ignored, delayed keys are
    discarded, and :meth:`get` keeps handing out queued keys (including dirty
    keys still being processed) until nothing is left, then reports shutdown.
    """

    def __init__(
        self,
        name: str = "",
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._waiting_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._enqueued_at: dict[str, float] = {}
        self._started_at: dict[str, float] = {}
        self._shutting_down = False

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        METRICS.queue_adds_total.labels(name=self.name).inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._enqueue_locked(key)

    def _enqueue_locked(self, key: str) -> None:
        self._queue.append(key)
        self._enqueued_at[key] = self._clock()
        self._update_depth()
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return

            due_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting[key] = due_at
            heapq.heappush(self._waiting_heap, (due_at, next(self._sequence), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: str) -> None:
        """Re-add *key* after the delay the rate limiter assigns to it."""
        delay = self.rate_limiter.when(key)
        METRICS.queue_retries_total.labels(name=self.name).inc()
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting_heap and self._waiting_heap[0][0] <= now:
            due_at, _, key = heapq.heappop(self._waiting_heap)
            if self._waiting.get(key) != due_at:
                continue
            del self._waiting[key]
            self._add_locked(key)

    def _next_due_in_locked(self) -> float | None:
        while self._waiting_heap:
            due_at, _, key = self._waiting_heap[0]
            if self._waiting.get(key) == due_at:
                return max(0.0, due_at - self._clock())
            heapq.heappop(self._waiting_heap)
        return None

    def _drained_locked(self) -> bool:
        return not self._queue and not (self._dirty & self._processing)

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)`` for a key to process, ``(None, True)`` once the
        queue is shut down and drained, or ``(None, False)`` if *timeout*
        seconds pass with nothing to hand out.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if not self._shutting_down:
                    self._promote_due_locked()
                if self._queue:
                    break
                if self._shutting_down and self._drained_locked():
                    return None, True

                wait_for = None if self._shutting_down else self._next_due_in_locked()
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            now = self._clock()
            enqueued_at = self._enqueued_at.pop(key, None)
            if enqueued_at is not None:
                METRICS.queue_latency_seconds.labels(name=self.name).observe(now - enqueued_at)
            self._started_at[key] = now
            self._update_depth()
            METRICS.unfinished_work.labels(name=self.name).set(len(self._processing))
            return key, False

    def done(self, key: str) -> None:
        """Mark *key* as processed; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            started_at = self._started_at.pop(key, None)
            if started_at is not None:
                METRICS.work_duration_seconds.labels(name=self.name).observe(
                    self._clock() - started_at
                )
            METRICS.unfinished_work.labels(name=self.name).set(len(self._processing))
            if key in self._dirty:
                self._enqueue_locked(key)
            self._cond.notify_all()

    def shut_down(self) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._waiting)
            self._waiting.clear()
            self._waiting_heap.clear()
            self._cond.notify_all()

        if dropped:
            METRICS.queue_dropped_delayed_total.labels(name=self.name).inc(dropped)
            LOGGER.warning(
                "Queue %s shut down with %d delayed retr%s still waiting; dropping them",
                self.name,
                dropped,
                "y" if dropped == 1 else "ies",
            )

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down and wait until queued and in-flight keys are finished.

        Returns False if *timeout* passed first.
        """
        self.shut_down()
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and not self._processing, timeout=timeout
            )

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def count(self, key: str) -> int:
        """Return how many times *key* is currently queued (0 or 1)."""
        with self._cond:
            return sum(1 for queued in self._queue if queued == key)
