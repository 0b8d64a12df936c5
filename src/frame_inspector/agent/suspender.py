"""
Thread suspension inside the agent's own process.

Python threads cannot be stopped from the outside, so suspension is
cooperative: while any thread is marked for suspension a ``sys.monitoring``
LINE callback is active, and the marked thread blocks inside it the next
time it executes a line. A thread that does not reach a new line within the
arrival window is running native code (sleeping, waiting on I/O or a lock);
its current frame is sampled from ``sys._current_frames()`` and it still
blocks at the gate if it returns to Python code before being resumed.
Threads pass the gate while running logging or threading code, since the
agent needs the locks that code holds.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import threading
import types
from collections.abc import Iterator
from dataclasses import dataclass, field

from frame_inspector.errors import IncompatibleThreadState

logger = logging.getLogger(__name__)

_monitoring = sys.monitoring
_TOOL_NAME = "frame_inspector"
_CANDIDATE_TOOL_IDS = (
    _monitoring.DEBUGGER_ID,
    _monitoring.PROFILER_ID,
    _monitoring.OPTIMIZER_ID,
    _monitoring.COVERAGE_ID,
    3,
    4,
)
DEFAULT_ARRIVAL_TIMEOUT = 0.2
# The agent logs and enumerates threads itself. A thread is not parked with a
# logging frame anywhere on its stack, where handler locks may be held, nor
# while executing threading code, where its internal locks may be held.
_LOGGING_PATH = os.path.dirname(logging.__file__) + os.sep


@dataclass
class Suspension:
    """One suspended thread and the frame it was caught in."""

    ident: int
    name: str
    arrived: threading.Event = field(default_factory=threading.Event)
    release: threading.Event = field(default_factory=threading.Event)
    frame: types.FrameType | None = None
    in_native_code: bool = False

    @property
    def is_suspended(self) -> bool:
        return not self.release.is_set()


_pinned_frames: dict[int, types.FrameType] = {}


@contextlib.contextmanager
def pinned_frame(frame: types.FrameType) -> Iterator[None]:
    """
    Report ``frame`` as the top frame of the current thread inside the block.

    A thread that asks to inspect itself is blocked inside this package while
    the helper runs; pinning its caller's frame keeps the package's own
    frames out of the sample.
    """
    ident = threading.get_ident()
    _pinned_frames[ident] = frame
    try:
        yield
    finally:
        _pinned_frames.pop(ident, None)


def visible_frame(ident: int, frame: types.FrameType | None) -> types.FrameType | None:
    """Return the frame to report for a thread whose innermost frame is given."""
    return _pinned_frames.get(ident, frame)


class ThreadSuspender:
    """Suspend and resume Python threads of the current process."""

    def __init__(self, arrival_timeout: float = DEFAULT_ARRIVAL_TIMEOUT):
        """
        Initialize the suspender.

        :param arrival_timeout: Seconds to wait for a running thread to reach
            the gate before it is treated as parked in native code.
        """
        self.arrival_timeout = arrival_timeout
        self._lock = threading.Lock()
        self._suspensions: dict[int, Suspension] = {}
        self._tool_id: int | None = None

    def suspensions(self) -> list[Suspension]:
        with self._lock:
            return list(self._suspensions.values())

    def get(self, ident: int) -> Suspension | None:
        with self._lock:
            return self._suspensions.get(ident)

    def suspend(self, ident: int) -> Suspension:
        """
        Suspend a thread and capture its top frame.

        :raises IncompatibleThreadState: For the calling thread, a thread that
            is not alive, a thread already suspended, or when no monitoring
            tool slot is free.
        """
        if ident == threading.get_ident():
            raise IncompatibleThreadState("The agent thread cannot suspend itself")
        thread = _live_thread(ident)
        if thread is None:
            raise IncompatibleThreadState(f"Thread {ident} is not alive")

        suspension = Suspension(ident=ident, name=thread.name)
        with self._lock:
            if ident in self._suspensions:
                raise IncompatibleThreadState(f"Thread {thread.name!r} is already suspended")
            self._install()
            self._suspensions[ident] = suspension

        if not suspension.arrived.wait(self.arrival_timeout):
            suspension.in_native_code = True
            suspension.frame = visible_frame(ident, sys._current_frames().get(ident))  # noqa: WPS437
            logger.debug("Thread %r is in native code, sampling its current frame", thread.name)
        return suspension

    def resume(self, ident: int) -> bool:
        """Resume a suspended thread. Returns False if it was not suspended."""
        with self._lock:
            suspension = self._suspensions.pop(ident, None)
            if not self._suspensions:
                self._uninstall()
        if suspension is None:
            return False
        suspension.frame = None
        suspension.release.set()
        return True

    def resume_all(self) -> None:
        for suspension in self.suspensions():
            self.resume(suspension.ident)

    def _install(self) -> None:
        if self._tool_id is not None:
            return
        for tool_id in _CANDIDATE_TOOL_IDS:
            if _monitoring.get_tool(tool_id) is None:
                _monitoring.use_tool_id(tool_id, _TOOL_NAME)
                break
        else:
            raise IncompatibleThreadState("No free sys.monitoring tool id to suspend threads")
        _monitoring.register_callback(tool_id, _monitoring.events.LINE, self._on_line)
        _monitoring.set_events(tool_id, _monitoring.events.LINE)
        self._tool_id = tool_id

    def _uninstall(self) -> None:
        tool_id = self._tool_id
        if tool_id is None:
            return
        self._tool_id = None
        _monitoring.set_events(tool_id, _monitoring.events.NO_EVENTS)
        _monitoring.register_callback(tool_id, _monitoring.events.LINE, None)
        _monitoring.free_tool_id(tool_id)

    def _on_line(self, code: types.CodeType, line_number: int) -> None:
        suspension = self._suspensions.get(threading.get_ident())
        if suspension is None or suspension.release.is_set():
            return
        if _in_unparkable_code(sys._getframe(1)):  # noqa: WPS437
            return
        if not (suspension.arrived.is_set() or suspension.in_native_code):
            suspension.frame = visible_frame(suspension.ident, sys._getframe(1))  # noqa: WPS437
            suspension.arrived.set()
        suspension.release.wait()


def _in_unparkable_code(frame: types.FrameType) -> bool:
    if frame.f_code.co_filename == threading.__file__:
        return True
    while frame is not None:
        if frame.f_code.co_filename.startswith(_LOGGING_PATH):
            return True
        frame = frame.f_back
    return False


def _live_thread(ident: int) -> threading.Thread | None:
    for thread in threading.enumerate():
        if thread.ident == ident and thread.is_alive():
            return thread
    return None
