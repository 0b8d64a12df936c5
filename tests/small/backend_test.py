"""Unit tests for the GDB/MI command plumbing, with pygdbmi replaced by a mock."""

from unittest.mock import Mock

import pytest

from frame_inspector.gdb.backend import GDBBackend


def _done(payload=None) -> dict:
    return {"type": "result", "message": "done", "payload": payload, "token": None, "stream": "stdout"}


def _error(msg: str) -> dict:
    return {"type": "result", "message": "error", "payload": {"msg": msg}, "token": None, "stream": "stdout"}


@pytest.fixture
def replying_backend():
    """A backend whose controller answers every written command from a script."""
    backend = GDBBackend("/usr/bin/gdb", timeout=0.5)
    replies: dict[str, list[dict]] = {}

    def write(command, read_response=False):
        for response in replies.get(command, []):
            backend._process_gdb_response(response)  # noqa: WPS437

    backend._gdbmi = Mock(write=Mock(side_effect=write))  # noqa: WPS437
    return backend, replies


def test_send_command_requires_running_gdb():
    """Should refuse commands before start()."""
    with pytest.raises(RuntimeError, match="not running"):
        GDBBackend("/usr/bin/gdb").send_command_and_get_result("attach 1")


def test_send_command_collects_until_result(replying_backend):
    """Should return stream records together with the result record."""
    backend, replies = replying_backend
    console = {"type": "console", "message": None, "payload": "Attaching to process 1\n"}
    replies["attach 1"] = [console, _done()]
    assert backend.send_command_and_get_result("attach 1") == [console, _done()]
    assert backend.send_command_and_check_for_success("attach 1") == (True, "")


def test_send_command_times_out(replying_backend):
    """Should synthesize an error record naming the command."""
    backend, _ = replying_backend
    success, message = backend.send_command_and_check_for_success("detach", timeout=0.2)
    assert success is False
    assert "'detach'" in message


def test_evaluate_returns_value(replying_backend):
    """Should quote the expression and return the printed value."""
    backend, replies = replying_backend
    replies['-data-evaluate-expression "getpid()"'] = [_done({"value": "1234"})]
    assert backend.evaluate("getpid()") == ((True, ""), "1234")


def test_evaluate_error(replying_backend):
    """Should return GDB's message and no value on failure."""
    backend, replies = replying_backend
    replies['-data-evaluate-expression "nosuch()"'] = [_error('No symbol "nosuch" in current context.')]
    result, value = backend.evaluate("nosuch()")
    assert not result.success
    assert "No symbol" in result.message
    assert value == ""


def test_async_records_are_queued_like_results(replying_backend):
    """Should hand notify records to the waiting command unchanged."""
    backend, replies = replying_backend
    stopped = {"type": "notify", "message": "stopped", "payload": {"reason": "signal-received"}}
    replies["attach 1"] = [stopped, _done()]
    assert backend.send_command_and_get_result("attach 1") == [stopped, _done()]
