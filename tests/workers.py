"""Threads with well-known locals for the inspection tests."""

import contextlib
import threading
import time
from collections.abc import Callable, Iterator

# Workers spin while this is set; loop conditions read it without a call
# so that no helper frame sits on top of the worker's own frame.
KEEP_RUNNING = [True]
POLL_INTERVAL = 0.02


def worker_with_locals():
    x = 42
    s = "hello"
    while KEEP_RUNNING[0]:
        time.sleep(POLL_INTERVAL)
    return x, s


def worker_without_locals():
    while KEEP_RUNNING[0]:
        time.sleep(POLL_INTERVAL)


def busy_worker():
    while KEEP_RUNNING[0]:
        _tick()


def _tick():
    return sum(range(10))


def quiet_entry_point():
    """Module level function run by the child interpreter tests."""


@contextlib.contextmanager
def running_worker(name: str, target: Callable[[], object] = worker_with_locals) -> Iterator[threading.Thread]:
    """Run ``target`` in a daemon thread called ``name`` for the block."""
    KEEP_RUNNING[0] = True
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    time.sleep(POLL_INTERVAL * 2)
    try:
        yield thread
    finally:
        KEEP_RUNNING[0] = False
        thread.join(timeout=5)
