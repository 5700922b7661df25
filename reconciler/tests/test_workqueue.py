from __future__ import annotations

import threading
import time

import pytest

from reconciler.src.workqueue import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
    default_controller_rate_limiter,
)


class FixedDelayLimiter:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[str] = []
        self.forgotten: list[str] = []

    def when(self, item: str) -> float:
        self.calls.append(item)
        return self.delay

    def forget(self, item: str) -> None:
        self.forgotten.append(item)

    def num_requeues(self, item: str) -> int:
        return self.calls.count(item)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _queue(delay: float = 0.0) -> RateLimitingQueue:
    return RateLimitingQueue(name="test", rate_limiter=FixedDelayLimiter(delay))


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


def test_repeated_add_while_pending_keeps_one_entry() -> None:
    queue = _queue()

    for _ in range(5):
        queue.add("default/sample-1")

    assert len(queue) == 1
    assert queue.count("default/sample-1") == 1


def test_distinct_keys_are_delivered_in_insertion_order() -> None:
    queue = _queue()
    queue.add("default/a")
    queue.add("default/b")
    queue.add("default/a")

    assert queue.get() == ("default/a", False)
    assert queue.get() == ("default/b", False)
    assert len(queue) == 0


def test_add_during_processing_redelivers_once_after_done() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    key, _ = queue.get()

    queue.add("default/sample-1")
    queue.add("default/sample-1")
    assert len(queue) == 0

    queue.done(key)

    assert queue.count("default/sample-1") == 1


def test_done_without_intervening_add_does_not_redeliver() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    key, _ = queue.get()

    queue.done(key)

    assert len(queue) == 0
    assert queue.get(timeout=0.01) == (None, False)


def test_in_flight_key_is_never_handed_to_a_second_worker() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    first, _ = queue.get()
    queue.add("default/sample-1")

    assert queue.get(timeout=0.05) == (None, False)

    queue.done(first)
    assert queue.get(timeout=0.05) == ("default/sample-1", False)


# ---------------------------------------------------------------------------
# Delayed and rate-limited adds
# ---------------------------------------------------------------------------


def test_add_after_delivers_once_delay_elapsed() -> None:
    queue = _queue()
    queue.add_after("default/sample-1", 0.05)

    assert len(queue) == 0
    started = time.monotonic()
    key, shutting_down = queue.get(timeout=2)

    assert key == "default/sample-1"
    assert not shutting_down
    assert time.monotonic() - started >= 0.04


def test_add_after_keeps_earliest_due_time() -> None:
    clock = FakeClock()
    queue = RateLimitingQueue(name="test", rate_limiter=FixedDelayLimiter(), clock=clock)

    queue.add_after("default/sample-1", 10)
    queue.add_after("default/sample-1", 1)
    queue.add_after("default/sample-1", 30)

    clock.now = 1.0
    assert queue.get(timeout=0) == ("default/sample-1", False)
    queue.done("default/sample-1")

    clock.now = 40.0
    assert queue.get(timeout=0) == (None, False)


def test_add_after_with_non_positive_delay_adds_immediately() -> None:
    queue = _queue()
    queue.add_after("default/sample-1", 0)

    assert len(queue) == 1


def test_add_rate_limited_uses_limiter_delay() -> None:
    limiter = FixedDelayLimiter(delay=0.0)
    queue = RateLimitingQueue(name="test", rate_limiter=limiter)

    queue.add_rate_limited("default/sample-1")

    assert limiter.calls == ["default/sample-1"]
    assert queue.num_requeues("default/sample-1") == 1
    assert len(queue) == 1


def test_forget_clears_limiter_state() -> None:
    limiter = FixedDelayLimiter()
    queue = RateLimitingQueue(name="test", rate_limiter=limiter)

    queue.forget("default/sample-1")

    assert limiter.forgotten == ["default/sample-1"]


def test_get_wakes_up_for_delayed_key_added_while_waiting() -> None:
    queue = _queue()
    results: list[tuple[str | None, bool]] = []

    waiter = threading.Thread(target=lambda: results.append(queue.get(timeout=2)))
    waiter.start()
    time.sleep(0.02)
    queue.add_after("default/sample-1", 0.02)
    waiter.join(timeout=3)

    assert results == [("default/sample-1", False)]


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def test_add_after_shutdown_is_ignored() -> None:
    queue = _queue()
    queue.shut_down()

    queue.add("default/sample-1")
    queue.add_after("default/sample-2", 0.01)

    assert len(queue) == 0
    assert queue.get() == (None, True)


def test_get_drains_queued_keys_before_reporting_shutdown() -> None:
    queue = _queue()
    queue.add("default/a")
    queue.add("default/b")
    queue.shut_down()

    assert queue.shutting_down()
    assert queue.get() == ("default/a", False)
    assert queue.get() == ("default/b", False)
    assert queue.get() == (None, True)


def test_shutdown_wakes_blocked_getters() -> None:
    queue = _queue()
    results: list[tuple[str | None, bool]] = []

    waiters = [
        threading.Thread(target=lambda: results.append(queue.get())) for _ in range(3)
    ]
    for waiter in waiters:
        waiter.start()
    time.sleep(0.05)
    queue.shut_down()
    for waiter in waiters:
        waiter.join(timeout=2)

    assert results == [(None, True)] * 3


def test_dirty_in_flight_key_is_redelivered_during_shutdown() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    key, _ = queue.get()
    queue.add("default/sample-1")
    queue.shut_down()

    results: list[tuple[str | None, bool]] = []
    waiter = threading.Thread(target=lambda: results.append(queue.get(timeout=2)))
    waiter.start()
    time.sleep(0.05)
    assert results == []

    queue.done(key)
    waiter.join(timeout=2)

    assert results == [("default/sample-1", False)]
    queue.done("default/sample-1")
    assert queue.get() == (None, True)


def test_shutdown_drops_delayed_keys() -> None:
    queue = _queue()
    queue.add_after("default/sample-1", 60)

    queue.shut_down()

    assert queue.get() == (None, True)


def test_shut_down_with_drain_waits_for_in_flight_work() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    key, _ = queue.get()

    timer = threading.Timer(0.05, queue.done, args=(key,))
    timer.start()

    assert queue.shut_down_with_drain(timeout=2) is True
    timer.join()


def test_shut_down_with_drain_times_out_while_work_in_flight() -> None:
    queue = _queue()
    queue.add("default/sample-1")
    queue.get()

    assert queue.shut_down_with_drain(timeout=0.05) is False


# ---------------------------------------------------------------------------
# Rate limiters
# ---------------------------------------------------------------------------


def test_exponential_limiter_strictly_increases_until_forgotten() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

    delays = [limiter.when("default/sample-1") for _ in range(3)]

    assert delays == [pytest.approx(0.005), pytest.approx(0.01), pytest.approx(0.02)]
    assert delays[0] < delays[1] < delays[2]
    assert limiter.num_requeues("default/sample-1") == 3

    limiter.forget("default/sample-1")

    assert limiter.num_requeues("default/sample-1") == 0
    assert limiter.when("default/sample-1") == pytest.approx(0.005)


def test_exponential_limiter_caps_at_max_delay() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=5)

    delays = [limiter.when("k") for _ in range(6)]

    assert delays == [1, 2, 4, 5, 5, 5]


def test_exponential_limiter_survives_very_long_failure_streaks() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

    for _ in range(2000):
        delay = limiter.when("k")

    assert delay == 1000


def test_exponential_limiter_tracks_keys_independently() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=100)
    limiter.when("a")
    limiter.when("a")

    assert limiter.when("b") == 1
    assert limiter.when("a") == 4


@pytest.mark.parametrize(
    ("base_delay", "max_delay"),
    [(0, 1), (-1, 1), (2, 1)],
)
def test_exponential_limiter_rejects_invalid_bounds(base_delay: float, max_delay: float) -> None:
    with pytest.raises(ValueError):
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay)


def test_bucket_limiter_allows_burst_then_spaces_out() -> None:
    clock = FakeClock()
    limiter = BucketRateLimiter(qps=1, burst=2, clock=clock)

    assert limiter.when("a") == 0
    assert limiter.when("b") == 0
    assert limiter.when("c") == pytest.approx(1.0)

    clock.now = 10.0
    assert limiter.when("d") == 0
    assert limiter.num_requeues("d") == 0


def test_max_of_limiter_takes_longest_delay_and_forgets_everywhere() -> None:
    short = FixedDelayLimiter(delay=0.1)
    long = FixedDelayLimiter(delay=3.0)
    limiter = MaxOfRateLimiter(short, long)

    assert limiter.when("k") == 3.0
    limiter.forget("k")

    assert short.forgotten == ["k"]
    assert long.forgotten == ["k"]


def test_default_controller_rate_limiter_starts_at_base_delay() -> None:
    limiter = default_controller_rate_limiter(base_delay=0.005, max_delay=1000, qps=10, burst=100)

    assert limiter.when("k") == pytest.approx(0.005)
    assert limiter.when("k") == pytest.approx(0.01)
    assert limiter.num_requeues("k") == 2


def test_shared_bucket_can_exceed_but_never_undercut_per_key_backoff() -> None:
    clock = FakeClock()
    exponential = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)
    limiter = MaxOfRateLimiter(exponential, BucketRateLimiter(qps=1, burst=1, clock=clock))

    first = limiter.when("k")
    second = limiter.when("k")
    clock.now = 10.0
    third = limiter.when("k")

    assert [first, second, third] == [
        pytest.approx(0.005),
        pytest.approx(1.0),
        pytest.approx(0.02),
    ]
    assert third < second
    assert third >= 0.005 * 2**2
    assert exponential.num_requeues("k") == 3
