"""Thread-safe caches of orchestrator objects keyed by object key."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class ObjectStore(Generic[T]):
    """Latest observed version of every object of one kind.

    The watcher writes, the reconcilers read.  Objects are expected to expose
    ``key`` and ``version``; an update carrying an older version than the one
    cached is rejected so per-object ordering stays monotonic.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._lock = threading.Lock()
        self._items: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._items.get(key)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def upsert(self, obj: T) -> Tuple[bool, Optional[T]]:
        """Store ``obj``; return ``(accepted, previous)``."""

        key = obj.key  # type: ignore[attr-defined]
        with self._lock:
            previous = self._items.get(key)
            if previous is not None and obj.version and previous.version > obj.version:  # type: ignore[attr-defined]
                return False, previous
            self._items[key] = obj
            return True, previous

    def delete(self, key: str) -> Optional[T]:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: List[T]) -> List[T]:
        """Swap the whole content after a re-list; return vanished objects."""

        fresh = {obj.key: obj for obj in objects}  # type: ignore[attr-defined]
        with self._lock:
            vanished = [obj for key, obj in self._items.items() if key not in fresh]
            self._items = fresh
        return vanished

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
