from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from converge.src.metrics import METRICS
from converge.src.ratelimit import RateLimiter, default_controller_rate_limiter


class WorkQueue:
    """Deduplicating FIFO of resource keys with an in-flight marker per key.

    A key is in at most one of two places: the ready queue, or a worker's
    hands (``_processing``). ``_dirty`` holds every key that needs
    processing, so:

    - ``add`` of a key that is already dirty is a no-op;
    - ``add`` of a key that is in flight only marks it dirty, and ``done``
      puts it back on the ready queue exactly once.

    This gives the two guarantees the workers rely on: a key is never
    processed by two workers at once, and a change that arrives while its
    key is in flight is never lost.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False
        self._added_at: dict[str, float] = {}
        self._started_at: dict[str, float] = {}

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        if key in self._processing:
            return

        self._queue.append(key)
        self._added_at.setdefault(key, self._clock())
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
        self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is ready or the queue shuts down.

        Returns ``(key, False)`` with the key now in flight, or
        ``(None, True)`` once :meth:`shut_down` has been called.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                now = self._clock()
                self._promote_ready_locked(now)
                if self._queue:
                    break
                self._cond.wait(timeout=self._next_wakeup_locked(now))

            key = self._queue.popleft()
            now = self._clock()
            self._processing.add(key)
            self._dirty.discard(key)
            self._started_at[key] = now
            added_at = self._added_at.pop(key, None)
            if added_at is not None:
                METRICS.queue_latency_seconds.labels(queue=self.name).observe(now - added_at)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        """Release *key*; re-queue it if it was added again while in flight."""
        with self._cond:
            self._processing.discard(key)
            started_at = self._started_at.pop(key, None)
            if started_at is not None:
                METRICS.work_duration_seconds.labels(queue=self.name).observe(
                    self._clock() - started_at
                )
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._added_at.setdefault(key, self._clock())
                METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out work and wake every blocked :meth:`get`. Idempotent."""
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            self._on_shut_down_locked()
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def in_flight(self) -> set[str]:
        with self._cond:
            return set(self._processing)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # Hooks for DelayingQueue; the plain queue has nothing waiting.

    def _promote_ready_locked(self, now: float) -> None:
        return None

    def _next_wakeup_locked(self, now: float) -> float | None:
        return None

    def _on_shut_down_locked(self) -> None:
        return None


class DelayingQueue(WorkQueue):
    """Work queue that can hold keys back until a delay has elapsed.

    Waiting keys live in a min-heap ordered by ready time and are moved onto
    the ready queue by whichever ``get`` call notices they are due, so no
    extra timer thread is needed.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name, clock=clock)
        self._waiting: list[tuple[float, int, str]] = []
        self._ready_at: dict[str, float] = {}
        self._sequence = itertools.count()

    def add_after(self, key: str, delay_seconds: float) -> None:
        """Add *key* once *delay_seconds* have passed.

        A key already waiting keeps whichever ready time is earlier, and a
        plain :meth:`add` of a waiting key cancels its delayed add.
        """
        if delay_seconds <= 0:
            self.add(key)
            return

        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            existing = self._ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            # Blocked getters must recompute their timeout.
            self._cond.notify_all()

    def _add_locked(self, key: str) -> None:
        # A direct add supersedes any delayed add still waiting for the key.
        self._ready_at.pop(key, None)
        super()._add_locked(key)

    def waiting(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def _promote_ready_locked(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            # Superseded by an earlier ready time, or cancelled by a direct add.
            if self._ready_at.get(key) != ready_at:
                continue
            del self._ready_at[key]
            self._add_locked(key)

    def _next_wakeup_locked(self, now: float) -> float | None:
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._ready_at.get(key) == ready_at:
                return max(0.0, ready_at - now)
            heapq.heappop(self._waiting)
        return None

    def _on_shut_down_locked(self) -> None:
        self._waiting.clear()
        self._ready_at.clear()


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose re-add delay comes from a :class:`RateLimiter`.

    ``num_requeues`` is the key's consecutive-failure count; ``forget``
    resets it after a success or a give-up.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, key: str) -> None:
        delay_seconds = self.rate_limiter.when(key)
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(key, delay_seconds)

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)
