"""Event primitives delivered by the watchers to the handler registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ObjectAdded:
    """An object was observed for the first time.

    Watchers also emit this for every object found by a re-list, so handlers
    must treat it as "make sure this object is reconciled".
    """

    kind: str
    obj: Any


@dataclass(frozen=True)
class ObjectUpdated:
    kind: str
    old: Any
    new: Any


@dataclass(frozen=True)
class ObjectDeleted:
    """The object is gone; ``obj`` is its last known state."""

    kind: str
    obj: Any
