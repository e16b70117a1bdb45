"""List-then-watch loop feeding one object kind into its cache."""

from __future__ import annotations

import logging
import threading
from threading import Event, Thread
from typing import Any, Callable, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from ovnkube.backoff import Backoff, sleep
from ovnkube.exceptions import Cancelled, WatchError
from ovnkube.store import ObjectStore

from ..events import ObjectAdded, ObjectDeleted, ObjectUpdated
from ..registry import HandlerRegistry

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60
GONE = 410


class ResourceWatcher(Thread):
    """Keep ``store`` in line with the API server for one kind of object.

    The loop lists every object, emits a synthetic :class:`ObjectAdded` for
    each of them (and :class:`ObjectDeleted` for cached objects that are no
    longer listed), then streams changes from the list resource version.  An
    expired resource version or any stream failure leads to a fresh list
    after a backoff delay.  Events older than the cached copy are dropped.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        convert: Callable[[Any], Any],
        store: ObjectStore,
        registry: HandlerRegistry,
        stop_event: Event,
        *,
        watch_factory: Callable[[], Any] = watch.Watch,
        backoff: Optional[Backoff] = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(name=f"watch-{kind}", daemon=True)
        self.kind = kind
        self._list_func = list_func
        self._convert = convert
        self._store = store
        self._registry = registry
        self._stop_event = stop_event
        self._watch_factory = watch_factory
        self._backoff = backoff or Backoff(base=1.0, cap=30.0)
        self._timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._active = None

    def stop(self) -> None:
        """Interrupt the open stream; the caller sets the stop event."""

        with self._lock:
            active = self._active
        if active is not None:
            active.stop()

    def run(self) -> None:
        LOG.info("Starting %s watcher", self.kind)
        attempt = 0
        version: Optional[str] = None
        while not self._stop_event.is_set():
            try:
                if version is None:
                    version = self.resync()
                version = self.stream(version)
                attempt = 0
            except WatchError as exc:
                LOG.warning("%s watch interrupted, re-listing: %s", self.kind, exc)
                version = None
                if not self._pause(attempt):
                    break
                attempt += 1
            except Exception:  # noqa: BLE001
                LOG.exception("Unexpected error watching %s", self.kind)
                version = None
                if not self._pause(attempt):
                    break
                attempt += 1
        LOG.info("Stopping %s watcher", self.kind)

    def _pause(self, attempt: int) -> bool:
        try:
            sleep(self._stop_event, self._backoff.delay(attempt))
        except Cancelled:
            return False
        return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def resync(self) -> str:
        """List everything and replay it as events; return the list version."""

        result = self._list_func()
        objects = [self._convert(item) for item in result.items]
        vanished = self._store.replace(objects)
        for obj in vanished:
            self._registry.handle(ObjectDeleted(self.kind, obj))
        for obj in objects:
            self._registry.handle(ObjectAdded(self.kind, obj))
        version = result.metadata.resource_version
        LOG.debug(
            "Listed %d %s object(s) at version %s (%d vanished)",
            len(objects),
            self.kind,
            version,
            len(vanished),
        )
        return version

    def stream(self, version: str) -> str:
        """Apply watch events from ``version``; return the last version seen."""

        watcher = self._watch_factory()
        with self._lock:
            self._active = watcher
        try:
            events = watcher.stream(
                self._list_func,
                resource_version=version,
                timeout_seconds=self._timeout_seconds,
            )
            for event in events:
                if self._stop_event.is_set():
                    break
                event_type = event.get("type")
                if event_type == "ERROR":
                    raw = event.get("raw_object") or {}
                    if raw.get("code") == GONE:
                        raise WatchError(f"resource version {version} expired")
                    raise WatchError(f"watch error: {raw.get('message', raw)}")
                obj = self._convert(event["object"])
                version = obj.resource_version or version
                self.apply(event_type, obj)
        except ApiException as exc:
            raise WatchError(f"{self.kind} watch failed with status {exc.status}") from exc
        finally:
            with self._lock:
                self._active = None
        return version

    def apply(self, event_type: str, obj: Any) -> None:
        if event_type == "DELETED":
            previous = self._store.delete(obj.key)
            self._registry.handle(ObjectDeleted(self.kind, previous or obj))
            return
        accepted, previous = self._store.upsert(obj)
        if not accepted:
            LOG.debug(
                "Dropping stale %s event for %s at version %s",
                self.kind,
                obj.key,
                obj.resource_version,
            )
            return
        if previous is None:
            self._registry.handle(ObjectAdded(self.kind, obj))
        else:
            self._registry.handle(ObjectUpdated(self.kind, previous, obj))
