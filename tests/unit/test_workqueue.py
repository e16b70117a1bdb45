import threading
import time

import pytest

from ovnkube.exceptions import (
    Cancelled,
    ConflictError,
    DBRetryExhausted,
    NotReadyError,
    PermanentDBError,
)
from ovnkube_agent.workqueue import WorkQueue


class Handler:
    """Records calls and raises the queued exceptions one by one."""

    def __init__(self, errors=None, block=None):
        self.calls = []
        self.errors = list(errors or [])
        self.block = block
        self.entered = threading.Event()
        self.succeeded = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, key):
        with self._lock:
            self.calls.append(key)
            error = self.errors.pop(0) if self.errors else None
        self.entered.set()
        if self.block is not None:
            self.block.wait(5)
        if error is not None:
            raise error
        self.succeeded.set()


@pytest.fixture
def make_queue(stop_event, fast_backoff):
    queues = []

    def factory(handler, **kwargs):
        kwargs.setdefault("backoff", fast_backoff)
        queue = WorkQueue("test", handler, stop_event, **kwargs)
        queues.append(queue)
        return queue

    yield factory
    for queue in queues:
        queue.shutdown(1.0)


def test_keys_are_handled(make_queue):
    handler = Handler()
    queue = make_queue(handler, workers=2)
    queue.start()

    queue.add("a")
    queue.add("b")

    assert queue.wait_idle(5)
    assert sorted(handler.calls) == ["a", "b"]


def test_duplicate_keys_collapse(make_queue):
    handler = Handler()
    queue = make_queue(handler)
    for _ in range(3):
        queue.add("a")
    assert len(queue) == 1

    queue.start()

    assert queue.wait_idle(5)
    assert handler.calls == ["a"]


def test_key_added_while_running_is_handled_again(make_queue):
    release = threading.Event()
    handler = Handler(block=release)
    queue = make_queue(handler, workers=4)
    queue.start()

    queue.add("a")
    assert handler.entered.wait(5)
    queue.add("a")
    queue.add("a")
    release.set()

    assert queue.wait_idle(5)
    assert handler.calls == ["a", "a"]


def test_not_ready_is_retried_until_it_succeeds(make_queue):
    handler = Handler(errors=[NotReadyError("switch missing"), NotReadyError("switch missing")])
    queue = make_queue(handler)
    queue.start()

    queue.add("a")

    assert handler.succeeded.wait(5)
    assert handler.calls == ["a", "a", "a"]


def test_unexpected_errors_are_retried(make_queue):
    handler = Handler(errors=[RuntimeError("boom")])
    queue = make_queue(handler)
    queue.start()

    queue.add("a")

    assert handler.succeeded.wait(5)
    assert handler.calls == ["a", "a"]


@pytest.mark.parametrize("error", [PermanentDBError("constraint"), ConflictError("overlap")])
def test_permanent_errors_are_retried_once_then_dropped(make_queue, error):
    handler = Handler(errors=[error] * 5)
    queue = make_queue(handler)
    queue.start()

    queue.add("a")

    assert queue.wait_idle(5)
    time.sleep(0.05)
    assert handler.calls == ["a", "a"]


def test_retry_exhaustion_is_escalated(make_queue):
    fatal = []
    error = DBRetryExhausted("gone")
    handler = Handler(errors=[error])
    queue = make_queue(handler, on_fatal=fatal.append)
    queue.start()

    queue.add("a")

    assert queue.wait_idle(5)
    assert fatal == [error]
    assert handler.calls == ["a"]


def test_cancelled_work_is_not_retried(make_queue):
    handler = Handler(errors=[Cancelled("stop")])
    queue = make_queue(handler)
    queue.start()

    queue.add("a")

    assert queue.wait_idle(5)
    time.sleep(0.05)
    assert handler.calls == ["a"]


def test_add_after_delays_the_key(make_queue):
    handler = Handler()
    queue = make_queue(handler)
    queue.start()

    queue.add_after("a", 0.2)
    assert handler.calls == []

    assert handler.succeeded.wait(5)
    assert handler.calls == ["a"]


def test_shutdown_stops_workers_and_ignores_new_keys(make_queue):
    handler = Handler()
    queue = make_queue(handler, workers=2)
    queue.start()

    assert queue.shutdown(1.0) is True
    queue.add("a")

    assert len(queue) == 0
    assert handler.calls == []
