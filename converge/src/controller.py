from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from converge.src.cache import CacheLookupError, ResourceCache, meta_namespace_key
from converge.src.dispatcher import ChangeStream, Dispatcher, KeyFunc
from converge.src.metrics import METRICS
from converge.src.ratelimit import RateLimiter
from converge.src.workqueue import RateLimitingQueue

Reconciler = Callable[[str, Any], None]
GiveUpHandler = Callable[[str, BaseException], None]

DEFAULT_MAX_RETRIES = 5
WORKER_RESTART_PERIOD_SECONDS = 1.0


class CacheSyncTimeout(RuntimeError):
    """Raised when the initial listing is not applied within the sync timeout."""


class Controller:
    """Keeps a resource cache in sync with a change stream and reconciles every key.

    Wiring::

        ChangeStream -> Dispatcher -> ResourceCache + RateLimitingQueue -> workers -> reconciler

    The controller owns its cache and queue. Each worker takes one key at a
    time from the queue, reads the key's current value from the cache
    (``None`` when the resource is gone) and calls ``reconciler(key, value)``.
    Returning means success; raising means failure.

    Failure policy per key:
        - success: ``forget`` the key's failure history;
        - failure with fewer than ``max_retries`` requeues: ``add_rate_limited``;
        - failure once ``max_retries`` requeues are spent: ``forget``, report
          through ``on_give_up`` and drop the key until the next change event.

    Key internal state:
        ``_stop``
            Internal stop signal. Set by :meth:`request_stop`, by a crash
            or unexpected exit of the stream or dispatcher thread, or when
            the caller's stop event fires.
        ``ready``
            Set while workers are running against a synced cache; drives
            the ``/readyz`` probe.
    """

    def __init__(
        self,
        stream: ChangeStream,
        reconciler: Reconciler,
        *,
        name: str = "controller",
        key_fn: KeyFunc = meta_namespace_key,
        rate_limiter: RateLimiter | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        cache_sync_timeout: float = 60.0,
        shutdown_timeout: float = 30.0,
        on_give_up: GiveUpHandler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.stream = stream
        self.reconciler = reconciler
        self.name = name
        self.max_retries = max_retries
        self.cache_sync_timeout = cache_sync_timeout
        self.shutdown_timeout = shutdown_timeout
        self.on_give_up = on_give_up
        self.logger = logger or logging.getLogger(__name__)

        self.cache = ResourceCache()
        self.queue = RateLimitingQueue(rate_limiter=rate_limiter, name=name)
        self.dispatcher = Dispatcher(
            cache=self.cache,
            work_queue=self.queue,
            key_fn=key_fn,
            name=name,
            logger=self.logger,
        )

        self.ready = threading.Event()
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []

    def request_stop(self) -> None:
        """Ask :meth:`run` to shut down. Safe to call any number of times, from any thread."""
        self._stop.set()

    def process_next_item(self) -> bool:
        """Take one key from the queue and reconcile it.

        Returns False once the queue has shut down, telling the worker loop
        to exit.
        """
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        # done() releases the key for other workers and re-queues it if it
        # changed while we held it.
        try:
            error = self._reconcile(key)
            self.handle_error(error, key)
        finally:
            self.queue.done(key)
        return True

    def _reconcile(self, key: str) -> BaseException | None:
        try:
            obj, exists = self.cache.get(key)
        except CacheLookupError as exc:
            self.logger.error("Fetching %s from the resource cache failed: %s", key, exc)
            return exc

        METRICS.active_workers.labels(controller=self.name).inc()
        started = time.monotonic()
        try:
            self.reconciler(key, obj if exists else None)
        except Exception as exc:
            return exc
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
            METRICS.active_workers.labels(controller=self.name).dec()
        return None

    def handle_error(self, error: BaseException | None, key: str) -> None:
        """Apply the retry/give-up policy to the outcome of one reconcile."""
        if error is None:
            # Clear the backoff history so the next change to this key is
            # not delayed by failures that have since been resolved.
            self.queue.forget(key)
            METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
            return

        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            self.logger.warning(
                "Error reconciling %s (retry %d/%d): %s",
                key,
                requeues + 1,
                self.max_retries,
                error,
            )
            METRICS.reconcile_total.labels(controller=self.name, result="retry").inc()
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        METRICS.reconcile_total.labels(controller=self.name, result="dropped").inc()
        METRICS.dropped_keys_total.labels(controller=self.name).inc()
        self.logger.error(
            "Dropping %s out of the queue after %d retries: %s",
            key,
            requeues,
            error,
        )
        if self.on_give_up is not None:
            try:
                self.on_give_up(key, error)
            except Exception:
                self.logger.exception("Give-up handler failed for %s", key)

    def _run_worker(self) -> None:
        """Drain the queue until shutdown, restarting after a pause if the loop crashes."""
        while not self.queue.shutting_down():
            try:
                while self.process_next_item():
                    pass
                return
            except Exception:
                self.logger.exception(
                    "Worker crashed; restarting in %.1fs", WORKER_RESTART_PERIOD_SECONDS
                )
                METRICS.worker_crashes_total.labels(controller=self.name).inc()
                self._stop.wait(timeout=WORKER_RESTART_PERIOD_SECONDS)

    def _run_stream(self) -> None:
        try:
            self.stream.run(self.dispatcher, self._stop)
            if not self._stop.is_set():
                self.logger.error("Change stream exited without a stop signal; shutting down")
        except Exception:
            self.logger.exception("Change stream crashed; shutting down")
        finally:
            self._stop.set()

    def _run_dispatcher(self) -> None:
        try:
            self.dispatcher.run(self._stop)
        except Exception:
            # The cache may now be stale, so nothing downstream can be trusted.
            self.logger.exception("Dispatcher crashed; shutting down")
            self._stop.set()

    def run(self, workers: int = 1, stop_event: threading.Event | None = None) -> None:
        """Run until *stop_event* is set or :meth:`request_stop` is called.

        1. Starts the change stream and dispatcher threads.
        2. Waits up to ``cache_sync_timeout`` for the first listing to be
           applied. On timeout no worker is started and
           :class:`CacheSyncTimeout` is raised after shutdown.
        3. Starts *workers* worker threads.
        4. On stop: stops the stream, shuts the queue down (waking every
           blocked worker) and waits up to ``shutdown_timeout`` for
           in-flight reconciles to return. Reconciles are never interrupted.

        *stop_event* becomes the controller's stop signal, so it is also set
        when the controller stops itself after a stream or dispatcher crash.
        A stop requested before :meth:`run` makes it return without starting
        workers. A controller runs once; its queue cannot be restarted.
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        if stop_event is not None:
            # Carry over a stop requested before run().
            if self._stop.is_set():
                stop_event.set()
            self._stop = stop_event

        self.logger.info("Starting %s controller", self.name)
        stream_thread = threading.Thread(
            target=self._run_stream, name=f"{self.name}-stream", daemon=True
        )
        dispatcher_thread = threading.Thread(
            target=self._run_dispatcher, name=f"{self.name}-dispatcher", daemon=True
        )
        stream_thread.start()
        dispatcher_thread.start()

        try:
            if not self.dispatcher.wait_for_sync(self.cache_sync_timeout, stop_event=self._stop):
                if self._stop.is_set():
                    self.logger.info("Stopped before the resource cache synced")
                    return
                self.logger.error(
                    "Timed out after %.1fs waiting for the resource cache to sync",
                    self.cache_sync_timeout,
                )
                raise CacheSyncTimeout(
                    f"{self.name}: cache did not sync within {self.cache_sync_timeout}s"
                )

            self._workers = [
                threading.Thread(
                    target=self._run_worker, name=f"{self.name}-worker-{index}", daemon=True
                )
                for index in range(workers)
            ]
            for worker in self._workers:
                worker.start()
            self.ready.set()
            self.logger.info("Resource cache synced; started %d worker(s)", workers)

            self._stop.wait()
        finally:
            self.ready.clear()
            self._stop.set()
            self._shutdown(stream_thread, dispatcher_thread)
            self.logger.info("Stopped %s controller", self.name)

    def _shutdown(self, stream_thread: threading.Thread, dispatcher_thread: threading.Thread) -> None:
        self.logger.info("Stopping %s controller", self.name)
        try:
            self.stream.stop()
        except Exception:
            self.logger.exception("Failed to stop change stream")
        self.queue.shut_down()

        deadline = time.monotonic() + self.shutdown_timeout
        for thread in [*self._workers, dispatcher_thread, stream_thread]:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.error(
                    "Thread %s did not stop within %.1fs", thread.name, self.shutdown_timeout
                )
        self._workers = []
