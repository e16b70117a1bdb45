"""Exponential backoff with jitter and cancellable sleeps."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass

from .exceptions import Cancelled

DEFAULT_BASE = 0.1
DEFAULT_CAP = 15.0


@dataclass(frozen=True)
class Backoff:
    """Delay schedule ``base * 2**attempt`` capped at ``cap``.

    Attributes
    ----------
    base:
        Delay of the first retry in seconds.
    cap:
        Upper bound of the un-jittered delay.
    jitter:
        Multiply every delay by a random factor in ``[0.5, 1.5)``.
    """

    base: float = DEFAULT_BASE
    cap: float = DEFAULT_CAP
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        value = min(self.cap, self.base * (2 ** max(0, attempt)))
        if self.jitter:
            value *= 0.5 + random.random()
        return value


def sleep(stop_event: threading.Event, delay: float) -> None:
    """Wait ``delay`` seconds unless ``stop_event`` fires first."""

    if stop_event.wait(delay):
        raise Cancelled("stop requested while waiting")
