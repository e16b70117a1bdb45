"""Handlers translating watch events into work queue keys."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence

LOG = logging.getLogger(__name__)


class ResourceHandler(ABC):
    """Base class for handlers managed by :class:`HandlerRegistry`."""

    #: Kinds of objects the handler wants to see.
    kinds: Sequence[str] = ()

    @abstractmethod
    def on_added(self, kind: str, obj: Any) -> None:
        """React to ``obj`` being observed."""

    @abstractmethod
    def on_updated(self, kind: str, old: Any, new: Any) -> None:
        """React to ``obj`` changing from ``old`` to ``new``."""

    @abstractmethod
    def on_deleted(self, kind: str, obj: Any) -> None:
        """React to ``obj`` disappearing."""


class QueueHandler(ResourceHandler):
    """Enqueue the object key on every relevant event.

    ``changed(old, new)`` filters updates that cannot affect the reconciler,
    such as node heartbeats.
    """

    def __init__(
        self,
        kinds: Sequence[str],
        enqueue: Callable[[str], None],
        changed: Optional[Callable[[Any, Any], bool]] = None,
    ) -> None:
        self.kinds = tuple(kinds)
        self._enqueue = enqueue
        self._changed = changed

    def on_added(self, kind: str, obj: Any) -> None:
        self._enqueue(obj.key)

    def on_updated(self, kind: str, old: Any, new: Any) -> None:
        if self._changed is not None and not self._changed(old, new):
            return
        self._enqueue(new.key)

    def on_deleted(self, kind: str, obj: Any) -> None:
        self._enqueue(obj.key)


class LoggingHandler(ResourceHandler):
    """Record events of kinds that are cached but not programmed."""

    def __init__(self, kinds: Sequence[str]) -> None:
        self.kinds = tuple(kinds)

    def on_added(self, kind: str, obj: Any) -> None:
        LOG.debug("Observed %s %s", kind, obj.key)

    def on_updated(self, kind: str, old: Any, new: Any) -> None:
        LOG.debug("Observed update of %s %s", kind, new.key)

    def on_deleted(self, kind: str, obj: Any) -> None:
        LOG.debug("Observed deletion of %s %s", kind, obj.key)


def node_changed(old, new) -> bool:
    return old.annotations != new.annotations


def pod_changed(old, new) -> bool:
    return (
        old.node_name != new.node_name
        or old.ready != new.ready
        or old.phase != new.phase
        or old.labels != new.labels
        or old.annotations != new.annotations
        or old.host_network != new.host_network
        or old.container_ports != new.container_ports
    )
