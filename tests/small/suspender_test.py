"""Unit tests for cooperative thread suspension."""

import logging
import sys
import threading

import pytest

from frame_inspector.agent.suspender import ThreadSuspender, pinned_frame, visible_frame
from frame_inspector.errors import IncompatibleThreadState
from tests.workers import busy_worker, running_worker, worker_with_locals


def _frame_names(frame) -> list[str]:
    names = []
    while frame is not None:
        names.append(frame.f_code.co_name)
        frame = frame.f_back
    return names


@pytest.fixture
def suspender():
    """A suspender that releases everything after the test."""
    thread_suspender = ThreadSuspender(arrival_timeout=0.5)
    yield thread_suspender
    thread_suspender.resume_all()


def test_suspend_running_thread(suspender: ThreadSuspender):
    """Should park a thread running Python code at the line gate."""
    with running_worker("fi-busy", busy_worker) as thread:
        suspension = suspender.suspend(thread.ident)
        assert suspension.is_suspended
        assert "busy_worker" in _frame_names(suspension.frame)
        assert suspender.resume(thread.ident) is True
        assert not suspension.is_suspended


def test_suspend_sleeping_thread_captures_its_frame(suspender: ThreadSuspender):
    """Should capture the worker's own frame and its locals."""
    with running_worker("fi-sleeper", worker_with_locals) as thread:
        suspension = suspender.suspend(thread.ident)
        assert suspension.frame.f_code.co_name == "worker_with_locals"
        assert suspension.frame.f_locals["x"] == 42
        suspender.resume(thread.ident)


def test_suspend_thread_blocked_in_native_code(suspender: ThreadSuspender):
    """Should sample the current frame of a thread that never reaches the gate."""
    gate = threading.Event()
    thread = threading.Thread(target=gate.wait, name="fi-blocked", daemon=True)
    thread.start()
    suspender.arrival_timeout = 0.05
    try:
        suspension = suspender.suspend(thread.ident)
        assert suspension.in_native_code
        assert "wait" in _frame_names(suspension.frame)
    finally:
        suspender.resume(thread.ident)
        gate.set()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_suspend_refuses_calling_thread(suspender: ThreadSuspender):
    """Should never park the thread that asks for the suspension."""
    with pytest.raises(IncompatibleThreadState, match="itself"):
        suspender.suspend(threading.get_ident())


def test_suspend_refuses_dead_thread(suspender: ThreadSuspender):
    """Should refuse identifiers of threads that are gone."""
    thread = threading.Thread(target=lambda: None)
    thread.start()
    thread.join()
    with pytest.raises(IncompatibleThreadState, match="not alive"):
        suspender.suspend(thread.ident)


def test_suspend_twice_is_refused(suspender: ThreadSuspender):
    """Should refuse to suspend an already suspended thread."""
    with running_worker("fi-twice") as thread:
        suspender.suspend(thread.ident)
        with pytest.raises(IncompatibleThreadState, match="already suspended"):
            suspender.suspend(thread.ident)
        suspender.resume(thread.ident)


def test_resume_unknown_thread(suspender: ThreadSuspender):
    """Should report that nothing was resumed."""
    assert suspender.resume(123456789) is False


def test_monitoring_tool_released_after_resume(suspender: ThreadSuspender):
    """Should free the monitoring tool id once no thread is suspended."""
    with running_worker("fi-tool") as thread:
        suspender.suspend(thread.ident)
        tool_id = suspender._tool_id  # noqa: WPS437
        assert sys.monitoring.get_tool(tool_id) == "frame_inspector"
        suspender.resume(thread.ident)
    assert suspender._tool_id is None  # noqa: WPS437
    assert sys.monitoring.get_tool(tool_id) is None


def test_pinned_frame_replaces_reported_frame():
    """Should report the pinned frame for the current thread only inside the block."""
    caller = sys._getframe()  # noqa: WPS437
    ident = threading.get_ident()
    with pinned_frame(caller):
        assert visible_frame(ident, None) is caller
    assert visible_frame(ident, None) is None


class _BusyHandler(logging.Handler):
    """A handler whose emit runs Python lines while the handler lock is held."""

    def emit(self, record):
        total = 0
        for number in range(200):
            total += number


def test_thread_never_parks_while_logging(suspender: ThreadSuspender):
    """Should park a logging thread outside logging, with the handler lock free."""
    busy_logger = logging.getLogger("tests.small.suspender.busy")
    busy_logger.propagate = False
    handler = _BusyHandler()
    busy_logger.addHandler(handler)
    stop = threading.Event()

    def logging_worker():
        while not stop.is_set():
            busy_logger.warning("tick")

    thread = threading.Thread(target=logging_worker, name="fi-logging", daemon=True)
    thread.start()
    suspender.arrival_timeout = 2.0
    try:
        suspension = suspender.suspend(thread.ident)
        assert not suspension.in_native_code
        assert suspension.frame.f_code is logging_worker.__code__
        assert handler.lock.acquire(timeout=1)
        handler.lock.release()
        logging.getLogger("frame_inspector.agent.suspender").warning("agent logging still works")
    finally:
        suspender.resume(thread.ident)
        stop.set()
        thread.join(timeout=5)
        busy_logger.removeHandler(handler)
        busy_logger.propagate = True
    assert not thread.is_alive()
