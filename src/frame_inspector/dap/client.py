"""
Debug protocol client: connect to an agent, sample one thread, resume it.

Every suspension is paired with a resume in a ``finally`` block and every
session is disposed by its opener; the resume and dispose steps log their own
failures instead of raising, so they never hide the error that caused them.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import socket
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import NamedTuple

from frame_inspector.agent.values import render_value
from frame_inspector.common import CAPABILITY_MARKER
from frame_inspector.dap.dap_message import DAPRequest, error_name_of
from frame_inspector.dap.wire import ConnectionClosed, MessageStream
from frame_inspector.errors import (
    DebugInfoUnavailable,
    IncompatibleThreadState,
    InspectorError,
    ProtocolConnectFailed,
    ThreadNotFound,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
_ERRORS_BY_NAME: dict[str, type[InspectorError]] = {
    "IncompatibleThreadState": IncompatibleThreadState,
    "DebugInfoUnavailable": DebugInfoUnavailable,
}


class LocalVariableSample(NamedTuple):
    name: str
    value: str | None


@dataclass
class ThreadSnapshot:
    """A live thread of the target, as enumerated by the agent."""

    thread_id: int
    name: str
    suspended: bool = False


@dataclass
class DebugSession:
    """An established debug protocol connection."""

    host: str
    port: int
    sock: socket.socket
    stream: MessageStream
    threads: dict[str, ThreadSnapshot] = field(default_factory=dict)
    closed: bool = False
    _seq: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    def request(self, command: str, arguments: dict | None = None) -> dict:
        """
        Send a request and wait for its response, skipping events.

        :raises InspectorError: If the session is closed or the connection
            breaks; a failed response is returned, not raised.
        """
        if self.closed:
            raise InspectorError(f"Debug session to {self.host}:{self.port} is closed")

        seq = next(self._seq)
        try:
            self.stream.send(DAPRequest(seq, command, arguments).to_dict())
            while True:
                message = self.stream.receive()
                if message.get("type") == "response" and message.get("request_seq") == seq:
                    return message
                logger.debug("Skipping message while waiting for %s: %s", command, message)
        except (ConnectionClosed, OSError, ValueError) as err:
            raise InspectorError(f"Debug connection lost during {command}", cause=err) from err


def connect(host: str, port: int, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> DebugSession:
    """
    Connect to a listening agent and perform the ``initialize`` handshake.

    :raises ProtocolConnectFailed: On refusal, timeout or when the peer does
        not speak the agent's protocol.
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as err:
        raise ProtocolConnectFailed(
            f"Cannot connect to debug channel {host}:{port}",
            details={"host": host, "port": port},
            cause=err,
        ) from err

    session = DebugSession(host, port, sock, MessageStream(sock))
    try:
        response = session.request(
            "initialize",
            {"clientID": "frame_inspector", "adapterID": "frame_inspector"},
        )
    except InspectorError as err:
        dispose(session)
        raise ProtocolConnectFailed(
            f"Handshake with {host}:{port} failed",
            details={"host": host, "port": port},
            cause=err.cause or err,
        ) from err

    if not response.get("success") or not (response.get("body") or {}).get(CAPABILITY_MARKER):
        dispose(session)
        raise ProtocolConnectFailed(
            f"Peer at {host}:{port} is not a frame_inspector agent",
            details={"response": response},
        )
    logger.info("Connected to debug channel %s:%d", host, port)
    return session


def dispose(session: DebugSession) -> None:
    """Close the connection. Safe to call repeatedly and after failures."""
    if session.closed:
        return
    try:
        session.request("disconnect", {"restart": False})
    except InspectorError as err:
        logger.debug("disconnect request failed: %s", err)
    session.closed = True
    try:
        session.sock.close()
    except OSError as err:
        logger.warning("Closing debug connection failed: %s", err)


@contextlib.contextmanager
def connected(host: str, port: int, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> Iterator[DebugSession]:
    """Connect for the duration of a ``with`` block."""
    session = connect(host, port, timeout)
    try:
        yield session
    finally:
        dispose(session)


def list_threads(session: DebugSession) -> list[ThreadSnapshot]:
    response = session.request("threads")
    if not response.get("success"):
        raise InspectorError(f"threads request failed: {response.get('message')}")
    return [
        ThreadSnapshot(thread_id=thread["id"], name=thread["name"])
        for thread in (response.get("body") or {}).get("threads", [])
    ]


def find_thread(session: DebugSession, name: str) -> ThreadSnapshot:
    """
    Find a live thread by exact name.

    When several threads share the name the first one in the agent's
    enumeration order is returned.

    :raises ThreadNotFound: If no thread has that name.
    """
    for thread in list_threads(session):
        if thread.name == name:
            session.threads[name] = thread
            return thread
    raise ThreadNotFound(name)


@contextlib.contextmanager
def suspended(session: DebugSession, thread: ThreadSnapshot) -> Iterator[ThreadSnapshot]:
    """
    Suspend a thread for the duration of a ``with`` block.

    The thread is resumed on every exit path; a failing resume is logged.

    :raises IncompatibleThreadState: If the thread cannot be suspended.
    """
    _check(session.request("pause", {"threadId": thread.thread_id}), "pause")
    thread.suspended = True
    try:
        yield thread
    finally:
        _resume(session, thread)


def suspend_and_sample(session: DebugSession, thread: ThreadSnapshot) -> list[LocalVariableSample]:
    """
    Read the visible variables of a thread's top frame.

    :return: Samples in definition order; empty when the thread has no
        Python frame or the frame has no variables.
    :raises IncompatibleThreadState: If the thread cannot be suspended.
    :raises DebugInfoUnavailable: If the frame's variables cannot be read.
    """
    with suspended(session, thread):
        trace = _check(
            session.request("stackTrace", {"threadId": thread.thread_id, "startFrame": 0, "levels": 1}),
            "stackTrace",
        )
        frames = trace.get("stackFrames", [])
        if not frames:
            return []

        scopes = _check(session.request("scopes", {"frameId": frames[0]["id"]}), "scopes")
        samples = []
        for scope in scopes.get("scopes", []):
            reference = scope["variablesReference"]
            body = _check(
                session.request("variables", {"variablesReference": reference}),
                "variables",
            )
            samples.extend(
                LocalVariableSample(variable["name"], render_value(variable.get("valueInfo")))
                for variable in body.get("variables", [])
            )
        return samples


def _resume(session: DebugSession, thread: ThreadSnapshot) -> None:
    try:
        response = session.request("continue", {"threadId": thread.thread_id})
    except InspectorError as err:
        logger.error("Resuming thread %r failed: %s", thread.name, err)
        return
    if response.get("success"):
        thread.suspended = False
    else:
        logger.error("Resuming thread %r failed: %s", thread.name, response.get("message"))


def _check(response: dict, command: str) -> dict:
    """Return the body of a successful response, raise the mapped error otherwise."""
    if response.get("success"):
        return response.get("body") or {}
    message = response.get("message") or f"{command} failed"
    error_class = _ERRORS_BY_NAME.get(error_name_of(response) or "", InspectorError)
    raise error_class(message, details={"command": command})
