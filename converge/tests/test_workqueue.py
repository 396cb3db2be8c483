from __future__ import annotations

import threading
import time

import pytest

from converge.src.ratelimit import ItemExponentialFailureRateLimiter
from converge.src.workqueue import DelayingQueue, RateLimitingQueue, WorkQueue


def _get_in_thread(queue: WorkQueue) -> tuple[threading.Thread, dict[str, object]]:
    result: dict[str, object] = {}

    def _get() -> None:
        result["value"] = queue.get()

    thread = threading.Thread(target=_get, daemon=True)
    thread.start()
    return thread, result


# ---------------------------------------------------------------------------
# Deduplication and in-flight tracking
# ---------------------------------------------------------------------------


def test_get_returns_keys_in_fifo_order() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    queue.add("b")

    assert queue.get() == ("a", False)
    assert queue.get() == ("b", False)


def test_adding_pending_key_twice_keeps_one_copy() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2


def test_key_added_while_in_flight_is_not_handed_out_again() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    key, _ = queue.get()

    queue.add("a")

    assert len(queue) == 0
    assert queue.in_flight() == {"a"}
    assert key == "a"


def test_done_requeues_key_that_was_dirtied_in_flight() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    queue.get()
    queue.add("a")
    queue.add("a")

    queue.done("a")

    assert len(queue) == 1
    assert queue.get() == ("a", False)
    queue.done("a")
    assert len(queue) == 0


def test_done_without_new_add_does_not_requeue() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    queue.get()

    queue.done("a")

    assert len(queue) == 0
    assert queue.in_flight() == set()


def test_get_blocks_until_a_key_is_added() -> None:
    queue = WorkQueue(name="test")
    thread, result = _get_in_thread(queue)

    time.sleep(0.05)
    assert thread.is_alive()

    queue.add("a")
    thread.join(timeout=2)

    assert result["value"] == ("a", False)


def test_no_two_workers_hold_the_same_key() -> None:
    queue = WorkQueue(name="test")
    holders: dict[str, int] = {}
    violations: list[str] = []
    lock = threading.Lock()
    stop = threading.Event()

    def worker() -> None:
        while True:
            key, shutdown = queue.get()
            if shutdown:
                return
            with lock:
                holders[key] = holders.get(key, 0) + 1
                if holders[key] > 1:
                    violations.append(key)
            time.sleep(0.001)
            with lock:
                holders[key] -= 1
            queue.done(key)

    def producer() -> None:
        while not stop.is_set():
            for key in ("a", "b", "c"):
                queue.add(key)

    workers = [threading.Thread(target=worker, daemon=True) for _ in range(6)]
    for thread in workers:
        thread.start()
    producer_thread = threading.Thread(target=producer, daemon=True)
    producer_thread.start()

    time.sleep(0.3)
    stop.set()
    producer_thread.join(timeout=2)
    queue.shut_down()
    for thread in workers:
        thread.join(timeout=2)

    assert violations == []


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def test_shut_down_unblocks_waiting_getters() -> None:
    queue = WorkQueue(name="test")
    threads = [_get_in_thread(queue) for _ in range(3)]

    time.sleep(0.05)
    queue.shut_down()

    for thread, result in threads:
        thread.join(timeout=2)
        assert not thread.is_alive()
        assert result["value"] == (None, True)


def test_no_work_handed_out_after_shut_down() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")

    queue.shut_down()
    queue.add("b")

    assert queue.get() == (None, True)
    assert queue.shutting_down() is True


def test_shut_down_is_idempotent() -> None:
    queue = WorkQueue(name="test")

    queue.shut_down()
    queue.shut_down()

    assert queue.get() == (None, True)


def test_done_after_shut_down_is_safe() -> None:
    queue = WorkQueue(name="test")
    queue.add("a")
    queue.get()
    queue.add("a")
    queue.shut_down()

    queue.done("a")

    assert queue.in_flight() == set()
    assert queue.get() == (None, True)


# ---------------------------------------------------------------------------
# Delayed adds
# ---------------------------------------------------------------------------


def test_add_after_holds_key_until_delay_elapses() -> None:
    queue = DelayingQueue(name="test")
    started = time.monotonic()

    queue.add_after("a", 0.1)
    assert len(queue) == 0
    assert queue.waiting() == 1

    key, shutdown = queue.get()

    assert (key, shutdown) == ("a", False)
    assert time.monotonic() - started >= 0.09


def test_add_after_with_zero_delay_adds_immediately() -> None:
    queue = DelayingQueue(name="test")

    queue.add_after("a", 0)

    assert len(queue) == 1


def test_add_after_keeps_earliest_ready_time() -> None:
    queue = DelayingQueue(name="test")
    queue.add_after("a", 5)
    queue.add_after("a", 0.05)
    queue.add_after("a", 10)

    started = time.monotonic()
    key, _ = queue.get()

    assert key == "a"
    assert time.monotonic() - started < 2
    assert queue.waiting() == 0


def test_delayed_keys_become_ready_in_ready_time_order() -> None:
    queue = DelayingQueue(name="test")
    queue.add_after("late", 0.15)
    queue.add_after("early", 0.05)

    assert queue.get() == ("early", False)
    assert queue.get() == ("late", False)


def test_delayed_key_already_pending_is_not_duplicated() -> None:
    queue = DelayingQueue(name="test")
    queue.add("a")
    queue.add_after("a", 0.02)

    assert queue.get() == ("a", False)
    time.sleep(0.05)
    queue.done("a")

    assert queue.get() == ("a", False)
    queue.done("a")
    assert len(queue) == 0


def test_direct_add_cancels_pending_delayed_add() -> None:
    queue = DelayingQueue(name="test")
    queue.add_after("a", 0.05)

    queue.add("a")
    assert queue.waiting() == 0
    assert queue.get() == ("a", False)
    queue.done("a")

    time.sleep(0.1)
    queue.add("b")

    assert queue.get() == ("b", False)
    queue.done("b")
    assert len(queue) == 0


def test_blocked_getter_wakes_for_newly_delayed_key() -> None:
    queue = DelayingQueue(name="test")
    thread, result = _get_in_thread(queue)

    time.sleep(0.05)
    queue.add_after("a", 0.05)
    thread.join(timeout=2)

    assert result["value"] == ("a", False)


def test_shut_down_discards_delayed_keys() -> None:
    queue = DelayingQueue(name="test")
    queue.add_after("a", 0.01)

    queue.shut_down()
    queue.add_after("b", 0.01)

    assert queue.waiting() == 0
    assert queue.get() == (None, True)


# ---------------------------------------------------------------------------
# Rate-limited adds
# ---------------------------------------------------------------------------


def test_add_rate_limited_counts_requeues_until_forget() -> None:
    queue = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=0.01),
        name="test",
    )

    queue.add_rate_limited("a")
    queue.add_rate_limited("a")

    assert queue.num_requeues("a") == 2
    queue.forget("a")
    assert queue.num_requeues("a") == 0


def test_add_rate_limited_delivers_key_after_backoff() -> None:
    queue = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.05, max_delay=1),
        name="test",
    )
    started = time.monotonic()

    queue.add_rate_limited("a")
    key, _ = queue.get()

    assert key == "a"
    assert time.monotonic() - started >= 0.04


def test_rate_limited_add_while_in_flight_waits_for_done() -> None:
    queue = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.0, max_delay=0.0),
        name="test",
    )
    queue.add("a")
    queue.get()

    queue.add_rate_limited("a")
    assert len(queue) == 0

    queue.done("a")
    assert queue.get() == ("a", False)


@pytest.mark.parametrize("workers", [1, 4])
def test_every_added_key_is_delivered(workers: int) -> None:
    queue = WorkQueue(name="test")
    seen: set[str] = set()
    lock = threading.Lock()

    def worker() -> None:
        while True:
            key, shutdown = queue.get()
            if shutdown:
                return
            with lock:
                seen.add(key)
            queue.done(key)

    threads = [threading.Thread(target=worker, daemon=True) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for index in range(100):
        queue.add(f"k{index}")

    deadline = time.monotonic() + 5
    while len(seen) < 100 and time.monotonic() < deadline:
        time.sleep(0.01)
    queue.shut_down()
    for thread in threads:
        thread.join(timeout=2)

    assert len(seen) == 100
