from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from reboot_agent.src.kube import ResourceKind
from reboot_agent.src.metrics import METRICS


class ResourceEventHandler:
    """Receives add / update / delete notifications for one resource kind."""

    def on_added(self, obj: Any) -> None:
        pass

    def on_updated(self, old: Any, new: Any) -> None:
        pass

    def on_deleted(self, obj: Any) -> None:
        pass


def object_key(obj: Any) -> str | None:
    """Return ``namespace/name`` (or ``name`` for cluster-scoped objects)."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    namespace = getattr(metadata, "namespace", None)
    return f"{namespace}/{name}" if namespace else name


class ResourceWatch:
    """List-then-watch feed for a single resource kind.

    Keeps the last observed copy of every object so that ``MODIFIED``
    events can be delivered as ``on_updated(old, new)`` pairs.  The cache is
    the only state held, and it is rebuilt from scratch by every re-list.

    Lifecycle:

    1. The initial list is retried with jittered exponential backoff until
       it succeeds or a stop is requested.  Once the cache has been seeded
       ``synced`` is set and every listed object is delivered as
       ``on_added``.
    2. A streaming watch is opened from the list's ``resourceVersion`` and
       re-opened whenever the server closes it.
    3. ``410 Gone`` triggers a re-list; the fresh snapshot is diffed against
       the cache so changes missed while disconnected are still delivered.
    4. ``401`` / ``403`` are configuration errors (RBAC/auth): ``fatal`` is
       set and the loop exits instead of retrying forever.

    Handler exceptions are logged per event and never break the stream.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        handler: ResourceEventHandler,
        list_kwargs: dict[str, Any] | None = None,
        timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.handler = handler
        self.list_kwargs = dict(list_kwargs or {})
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self.fatal = threading.Event()
        self._cache: dict[str, Any] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _deliver(self, callback: Callable[..., None], *objs: Any) -> None:
        try:
            callback(*objs)
        except Exception:
            self.logger.exception(
                "Unhandled error in %s handler for %s", self.kind.value, object_key(objs[-1])
            )

    def _list(self) -> tuple[str | None, list[Any]]:
        listing = self.list_fn(**self.list_kwargs)
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return resource_version, list(getattr(listing, "items", None) or [])

    def _seed(self, items: list[Any]) -> None:
        """Replace the cache with a fresh listing and deliver it as adds."""
        self._cache = {}
        for obj in items:
            key = object_key(obj)
            if key is not None:
                self._cache[key] = obj
        self.synced.set()
        METRICS.cache_synced.labels(kind=self.kind.value).set(1)
        self.logger.info("Initial %s list synced (%d objects)", self.kind.value, len(self._cache))
        for obj in list(self._cache.values()):
            self._deliver(self.handler.on_added, obj)

    def _resync(self, items: list[Any]) -> None:
        """Diff a re-list against the cache and deliver what changed while disconnected."""
        previous = self._cache
        fresh: dict[str, Any] = {}
        for obj in items:
            key = object_key(obj)
            if key is not None:
                fresh[key] = obj
        self._cache = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._deliver(self.handler.on_added, obj)
            else:
                self._deliver(self.handler.on_updated, old, obj)
        for key, obj in previous.items():
            if key not in fresh:
                self._deliver(self.handler.on_deleted, obj)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Update the cache from one watch event and dispatch it to the handler."""
        key = object_key(obj)
        if key is None:
            return

        if event_type in {"ADDED", "MODIFIED"}:
            old = self._cache.get(key)
            self._cache[key] = obj
            if old is None:
                self._deliver(self.handler.on_added, obj)
            else:
                self._deliver(self.handler.on_updated, old, obj)
        elif event_type == "DELETED":
            self._cache.pop(key, None)
            self._deliver(self.handler.on_deleted, obj)

    def _access_denied(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind.value,
            during,
            exc.status,
        )
        self.fatal.set()

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        kind = self.kind.value

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version, items = self._list()
                self._seed(items)
                self.logger.info("Starting %s watch from resourceVersion %s", kind, resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(exc, "initial list")
                    return
                self.logger.exception("Initial %s list failed", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        # Reset to 1 on every successful stream; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; a fresh
                # list is the only way to resume without missing changes.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    try:
                        resource_version, items = self._list()
                        self._resync(items)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._access_denied(relist_exc, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.labels(kind=kind).inc()
                    self._access_denied(exc, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("%s watch stopped", kind)
