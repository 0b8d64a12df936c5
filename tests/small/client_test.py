"""Tests of the debug protocol client against an in-process agent."""

import socket
import threading

import pytest

from frame_inspector.bootstrap import find_free_port
from frame_inspector.dap.client import (
    LocalVariableSample,
    connect,
    connected,
    dispose,
    find_thread,
    list_threads,
    suspend_and_sample,
)
from frame_inspector.errors import InspectorError, ProtocolConnectFailed, ThreadNotFound
from tests.workers import running_worker, worker_without_locals


def test_sample_worker_locals(agent_listener):
    """Should read the worker's locals in definition order."""
    with running_worker("fi-client"):
        with connected(agent_listener.host, agent_listener.port) as session:
            thread = find_thread(session, "fi-client")
            samples = suspend_and_sample(session, thread)
    assert samples == [LocalVariableSample("x", "42"), LocalVariableSample("s", '"hello"')]
    assert not thread.suspended
    assert agent_listener.request_handler.suspender.suspensions() == []


def test_sample_worker_without_locals(agent_listener):
    """Should return an empty sample list for a frame without variables."""
    with running_worker("fi-empty", worker_without_locals):
        with connected(agent_listener.host, agent_listener.port) as session:
            samples = suspend_and_sample(session, find_thread(session, "fi-empty"))
    assert samples == []


def test_find_thread_missing(agent_listener):
    """Should raise ThreadNotFound naming the thread."""
    with connected(agent_listener.host, agent_listener.port) as session:
        assert any(thread.name == "MainThread" for thread in list_threads(session))
        with pytest.raises(ThreadNotFound, match="no-such-thread"):
            find_thread(session, "no-such-thread")


def test_dispose_is_idempotent(agent_listener):
    """Should close once and refuse further requests."""
    session = connect(agent_listener.host, agent_listener.port)
    dispose(session)
    dispose(session)
    assert session.closed
    with pytest.raises(InspectorError, match="closed"):
        session.request("threads")


def test_connect_refused():
    """Should wrap a refused connection."""
    port = find_free_port()
    with pytest.raises(ProtocolConnectFailed, match=str(port)):
        connect("127.0.0.1", port, timeout=2)


def test_connect_to_foreign_server():
    """Should reject a peer that hangs up during the handshake."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)

    def hang_up():
        conn, _ = server.accept()
        conn.close()

    acceptor = threading.Thread(target=hang_up, daemon=True)
    acceptor.start()
    with server:
        with pytest.raises(ProtocolConnectFailed, match="Handshake"):
            connect("127.0.0.1", server.getsockname()[1], timeout=2)
    acceptor.join(timeout=5)
