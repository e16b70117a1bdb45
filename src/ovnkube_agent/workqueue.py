"""Per-key work queue driving one reconciler."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from ovnkube.backoff import Backoff
from ovnkube.exceptions import (
    Cancelled,
    ConflictError,
    DBRetryExhausted,
    ExhaustedError,
    NotReadyError,
    PermanentDBError,
    UpdateConflict,
)

LOG = logging.getLogger(__name__)


class WorkQueue:
    """Feed object keys to ``handler`` from a pool of worker threads.

    A key is handled by at most one worker at a time.  Adding a key that is
    already queued is a no-op; adding a key that is being handled marks it
    dirty so it runs once more when the current pass finishes.  Failures are
    classified by exception type and either retried after a backoff delay,
    dropped with a log message or escalated through ``on_fatal``.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[str], None],
        stop_event: threading.Event,
        *,
        workers: int = 1,
        backoff: Optional[Backoff] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.name = name
        self._handler = handler
        self._stop = stop_event
        self._workers = workers
        self._backoff = backoff or Backoff()
        self._on_fatal = on_fatal
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._delayed: List[Tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: Dict[str, int] = {}
        self._threads: List[threading.Thread] = []
        self._stopping = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def add(self, key: str) -> None:
        with self._cond:
            if self._stopping:
                return
            self._enqueue_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._stopping:
                return
            due = time.monotonic() + delay
            heapq.heappush(self._delayed, (due, next(self._sequence), key))
            self._cond.notify()

    def _enqueue_locked(self, key: str) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._delayed)

    def wait_idle(self, timeout: float) -> bool:
        """Wait until nothing is queued or running; delayed retries are ignored."""

        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and not self._processing, timeout
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._work, name=f"{self.name}-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        LOG.info("Started %s queue with %d worker(s)", self.name, self._workers)

    def shutdown(self, deadline: float) -> bool:
        """Stop taking new keys and wait for running ones to finish."""

        end = time.monotonic() + deadline
        with self._cond:
            self._stopping = True
            dropped = len(self._queue) + len(self._delayed)
            self._cond.notify_all()
        if dropped:
            LOG.info("Dropping %d pending key(s) from the %s queue", dropped, self.name)
        finished = True
        for thread in self._threads:
            thread.join(max(0.0, end - time.monotonic()))
            if thread.is_alive():
                finished = False
        if not finished:
            LOG.warning("%s queue did not drain within %.1fs", self.name, deadline)
        return finished

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def _next(self) -> Optional[str]:
        with self._cond:
            while True:
                if self._stopping:
                    return None
                now = time.monotonic()
                while self._delayed and self._delayed[0][0] <= now:
                    _, _, key = heapq.heappop(self._delayed)
                    self._enqueue_locked(key)
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                timeout = self._delayed[0][0] - now if self._delayed else None
                self._cond.wait(timeout)

    def _done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._stopping:
                    self._enqueue_locked(key)
            self._cond.notify_all()

    def _work(self) -> None:
        while True:
            key = self._next()
            if key is None:
                return
            try:
                self._process(key)
            finally:
                self._done(key)

    def _process(self, key: str) -> None:
        try:
            self._handler(key)
        except Cancelled:
            LOG.debug("%s %s cancelled", self.name, key)
            return
        except DBRetryExhausted as exc:
            LOG.error("%s %s: northbound database unavailable: %s", self.name, key, exc)
            if self._on_fatal is not None:
                self._on_fatal(exc)
            return
        except PermanentDBError as exc:
            self._retry_once(key, "northbound database rejected the change", exc)
            return
        except ConflictError as exc:
            self._retry_once(key, "address conflict", exc)
            return
        except ExhaustedError as exc:
            # Retried until the operator widens the network or a node leaves.
            self._retry(key, exc, logging.WARNING)
            return
        except (NotReadyError, UpdateConflict) as exc:
            self._retry(key, exc, logging.DEBUG)
            return
        except Exception as exc:  # noqa: BLE001
            LOG.exception("%s %s failed", self.name, key)
            self._retry(key, exc, None)
            return
        self._failures.pop(key, None)

    def _retry(self, key: str, exc: Exception, level: Optional[int]) -> None:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        delay = self._backoff.delay(attempt)
        if level is not None:
            LOG.log(level, "%s %s: %s; retrying in %.2fs", self.name, key, exc, delay)
        self.add_after(key, delay)

    def _retry_once(self, key: str, reason: str, exc: Exception) -> None:
        if self._failures.get(key, 0) >= 1:
            LOG.error("%s %s: %s, giving up: %s", self.name, key, reason, exc)
            self._failures.pop(key, None)
            return
        LOG.warning("%s %s: %s, retrying once: %s", self.name, key, reason, exc)
        self._failures[key] = 1
        self.add(key)
