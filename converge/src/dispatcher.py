from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from converge.src.cache import (
    CacheLookupError,
    DeletedFinalStateUnknown,
    ResourceCache,
    deletion_handling_key,
    meta_namespace_key,
)
from converge.src.metrics import METRICS
from converge.src.workqueue import WorkQueue

# Raises CacheLookupError for objects it cannot key.
KeyFunc = Callable[[Any], str]


class EventType(enum.Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    REPLACED = "REPLACED"


@dataclass(frozen=True)
class ResourceEvent:
    """One change notification travelling from the stream to the dispatcher.

    ``obj`` is the new object (or tombstone for deletes); ``items`` is only
    set for ``REPLACED`` and holds a full listing of the collection.
    """

    type: EventType
    obj: Any = None
    old_obj: Any = None
    items: tuple[Any, ...] = ()


class EventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old_obj: Any, new_obj: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...

    def on_replace(self, items: Iterable[Any]) -> None: ...


class ChangeStream(Protocol):
    """Source of a collection's listing and subsequent change notifications."""

    def run(self, handler: EventHandler, stop_event: threading.Event) -> None:
        """List the collection, call ``handler.on_replace``, then stream events until stopped."""
        ...

    def stop(self) -> None: ...


class Dispatcher:
    """Apply change notifications to the resource cache and enqueue affected keys.

    The ``on_*`` handlers may be called from any thread; they only push a
    :class:`ResourceEvent` onto an internal channel. :meth:`run` is the single
    consumer and therefore the only writer of the cache, so the cache always
    reflects a prefix of the event stream.

    The first ``REPLACED`` event seeds the cache. Once it has been applied,
    :meth:`has_synced` turns true: every resource that existed at listing
    time has been enqueued, and every cached key absent from the listing has
    been deleted and enqueued as well.
    """

    def __init__(
        self,
        cache: ResourceCache,
        work_queue: WorkQueue,
        key_fn: KeyFunc = meta_namespace_key,
        name: str = "controller",
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.work_queue = work_queue
        self.key_fn = key_fn
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._events: queue.Queue[ResourceEvent] = queue.Queue()
        self._synced = threading.Event()

    def on_add(self, obj: Any) -> None:
        self._events.put(ResourceEvent(EventType.ADDED, obj=obj))

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        """Queue an update. ``old_obj`` may be ``None`` when the stream does not track it."""
        self._events.put(ResourceEvent(EventType.UPDATED, obj=new_obj, old_obj=old_obj))

    def on_delete(self, obj: Any) -> None:
        self._events.put(ResourceEvent(EventType.DELETED, obj=obj))

    def on_replace(self, items: Iterable[Any]) -> None:
        self._events.put(ResourceEvent(EventType.REPLACED, items=tuple(items)))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(
        self, timeout: float, stop_event: threading.Event | None = None
    ) -> bool:
        """Wait up to *timeout* seconds for the first listing to be applied.

        Returns early (False) when *stop_event* is set.
        """
        deadline = time.monotonic() + timeout
        while not self._synced.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if stop_event is not None and stop_event.is_set():
                return False
            self._synced.wait(timeout=min(remaining, 0.1))
        return True

    def pending(self) -> int:
        return self._events.qsize()

    def run(self, stop_event: threading.Event) -> None:
        """Consume the event channel until *stop_event* is set."""
        while not stop_event.is_set():
            try:
                event = self._events.get(timeout=0.1)
            except queue.Empty:
                continue
            self.apply(event)

    def apply(self, event: ResourceEvent) -> None:
        """Apply a single event. Events whose key cannot be derived are skipped."""
        if event.type is EventType.REPLACED:
            self._apply_replace(event.items)
            return

        try:
            if event.type is EventType.DELETED:
                key = deletion_handling_key(event.obj, self.key_fn)
                self.cache.delete(key)
            else:
                key = self.key_fn(event.obj)
                self.cache.put(key, event.obj)
        except CacheLookupError as exc:
            self.logger.error("Skipping %s event: %s", event.type.value, exc)
            METRICS.dispatcher_errors_total.labels(controller=self.name).inc()
            return

        self.logger.debug("Observed %s for %s", event.type.value.lower(), key)

        METRICS.events_total.labels(controller=self.name, type=event.type.value).inc()
        self.work_queue.add(key)

    def _apply_replace(self, items: tuple[Any, ...]) -> None:
        listed: set[str] = set()
        for obj in items:
            try:
                key = self.key_fn(obj)
                event_type = EventType.UPDATED if key in self.cache else EventType.ADDED
                self.cache.put(key, obj)
            except CacheLookupError as exc:
                self.logger.error("Skipping listed object: %s", exc)
                METRICS.dispatcher_errors_total.labels(controller=self.name).inc()
                continue
            listed.add(key)
            METRICS.events_total.labels(controller=self.name, type=event_type.value).inc()
            self.work_queue.add(key)

        vanished = sorted(self.cache.keys() - listed)
        for key in vanished:
            last_known, _ = self.cache.get(key)
            self.logger.info("Resource %s disappeared between listings; treating as deleted", key)
            self.apply(
                ResourceEvent(
                    EventType.DELETED,
                    obj=DeletedFinalStateUnknown(key=key, obj=last_known),
                )
            )

        if not self._synced.is_set():
            self.logger.info(
                "Initial listing applied: %d resource(s), %d vanished", len(listed), len(vanished)
            )
            self._synced.set()
