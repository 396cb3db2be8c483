from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, AppsV1Api
from kubernetes.config.config_exception import ConfigException

from converge.src.dispatcher import EventHandler
from converge.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_apps_client() -> AppsV1Api:
    """Return an AppsV1 API client using the active kube configuration."""
    return client.AppsV1Api()


class _AccessDenied(Exception):
    pass


class KubeListWatcher:
    """Change stream for one namespaced Kubernetes collection.

    ``list_fn`` is a namespaced list call such as
    ``AppsV1Api.list_namespaced_deployment``. :meth:`run`:

    1. Lists the collection, retrying with jittered exponential backoff
       (1 s doubling to a 30 s cap) so API hiccups at startup do not crash
       the controller, and hands the listing to ``handler.on_replace``.
    2. Watches from the listing's ``resourceVersion`` and forwards
       ``ADDED`` / ``MODIFIED`` / ``DELETED`` events to the handler.
    3. On ``410 Gone`` (etcd compacted past our resourceVersion) re-lists
       and delivers the fresh listing through ``on_replace``, so deletions
       missed while disconnected are still observed.
    4. On other errors backs off with jitter and reconnects.

    ``401`` / ``403`` responses are RBAC or credential problems; they are
    logged and end :meth:`run` instead of retrying forever.
    """

    def __init__(
        self,
        list_fn: Callable[..., Any],
        namespace: str,
        label_selector: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_fn = list_fn
        self.namespace = namespace
        self.label_selector = label_selector
        self.logger = logger or LOGGER
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"namespace": self.namespace}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _list(self, handler: EventHandler) -> str | None:
        """List the collection, deliver it as a replace, and return its resourceVersion."""
        try:
            listing = self.list_fn(**self._list_kwargs())
        except ApiException as exc:
            if exc.status in {401, 403}:
                raise _AccessDenied from exc
            raise
        items = getattr(listing, "items", None) or []
        handler.on_replace(items)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _backoff(self, stop_event: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    @staticmethod
    def _dispatch(handler: EventHandler, event_type: str, obj: Any) -> None:
        if event_type == "ADDED":
            handler.on_add(obj)
        elif event_type == "MODIFIED":
            handler.on_update(None, obj)
        elif event_type == "DELETED":
            handler.on_delete(obj)

    def run(self, handler: EventHandler, stop_event: threading.Event) -> None:
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._list(handler)
                self.logger.info(
                    "Listed %s; starting watch from resourceVersion %s",
                    self.namespace,
                    resource_version,
                )
                break
            except _AccessDenied as exc:
                self.logger.error(
                    "Kubernetes API access denied during initial list (status=%s). "
                    "Check controller RBAC and service account permissions.",
                    getattr(exc.__cause__, "status", None),
                )
                return
            except Exception:
                self.logger.exception("Initial Kubernetes list failed")
                METRICS.stream_errors_total.inc()
            backoff_seconds = self._backoff(stop_event, backoff_seconds)

        # Reset to 1 on every clean watch cycle; doubled on error up to the cap.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.stream_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self._dispatch(handler, str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    METRICS.stream_relists_total.inc()
                    try:
                        resource_version = self._list(handler)
                    except _AccessDenied as denied:
                        self.logger.error(
                            "Kubernetes API access denied during 410 re-list (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            getattr(denied.__cause__, "status", None),
                        )
                        return
                    except Exception:
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.stream_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.stream_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.stream_errors_total.inc()
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.stream_errors_total.inc()
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
