"""Registry dispatching watch events to resource handlers."""

from __future__ import annotations

from typing import Dict, Union

from .events import ObjectAdded, ObjectDeleted, ObjectUpdated
from .handlers import ResourceHandler

Event = Union[ObjectAdded, ObjectUpdated, ObjectDeleted]


class HandlerRegistry:
    """Dispatch object events to the handlers registered for their kind."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ResourceHandler] = {}

    def register(self, name: str, handler: ResourceHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"handler '{name}' already registered")
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def handle(self, event: Event) -> None:
        if isinstance(event, ObjectAdded):
            self._on_added(event)
        elif isinstance(event, ObjectUpdated):
            self._on_updated(event)
        elif isinstance(event, ObjectDeleted):
            self._on_deleted(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def _interested(self, kind: str):
        return [h for h in self._handlers.values() if kind in h.kinds]

    def _on_added(self, event: ObjectAdded) -> None:
        for handler in self._interested(event.kind):
            handler.on_added(event.kind, event.obj)

    def _on_updated(self, event: ObjectUpdated) -> None:
        for handler in self._interested(event.kind):
            handler.on_updated(event.kind, event.old, event.new)

    def _on_deleted(self, event: ObjectDeleted) -> None:
        for handler in self._interested(event.kind):
            handler.on_deleted(event.kind, event.obj)
