"""Unit tests for the in-process agent listener and its startup options."""

import json
import os
import socket
import sys
from pathlib import Path

import pytest

from frame_inspector.agent.__main__ import main as agent_main
from frame_inspector.agent.listener import (
    ADDRESS_PROPERTY,
    AGENT_PROPERTIES,
    agent_properties,
    dump_properties,
    parse_agent_arguments,
    running_listener,
    start_from_arguments,
    start_listener,
    stop_listener,
)
from frame_inspector.bootstrap import find_free_port
from frame_inspector.common import AGENT_ENV_VAR, AGENT_PID_ENV_VAR
from frame_inspector.dap.wire import MessageStream


def test_parse_agent_arguments():
    """Should split comma separated key=value options."""
    assert parse_agent_arguments("transport=dt_socket,server=y, suspend=n,address=127.0.0.1:5005") == {
        "transport": "dt_socket",
        "server": "y",
        "suspend": "n",
        "address": "127.0.0.1:5005",
    }
    assert parse_agent_arguments("") == {}


def test_parse_agent_arguments_malformed():
    """Should reject an option without a value."""
    with pytest.raises(ValueError, match="Malformed"):
        parse_agent_arguments("server=y,verbose")


@pytest.mark.parametrize("arguments", ["transport=dt_shmem,address=5005", "server=n,address=5005"])
def test_start_from_arguments_unsupported(arguments: str):
    """Should refuse transports and modes the agent does not offer."""
    with pytest.raises(ValueError):
        start_from_arguments(arguments)


def test_start_from_arguments_listens():
    """Should listen on the requested port and publish the address."""
    port = find_free_port()
    listener = start_from_arguments(f"transport=dt_socket,server=y,suspend=n,address=*:{port}")
    try:
        assert listener.port == port
        assert AGENT_PROPERTIES[ADDRESS_PROPERTY] == f"127.0.0.1:{port}"
        assert start_listener(port) is listener
        assert running_listener() is listener
    finally:
        stop_listener(port)
    assert ADDRESS_PROPERTY not in AGENT_PROPERTIES
    assert running_listener() is None


def test_listener_answers_initialize(agent_listener):
    """Should serve DAP requests over TCP."""
    with socket.create_connection((agent_listener.host, agent_listener.port), timeout=5) as sock:
        stream = MessageStream(sock)
        stream.send({"seq": 1, "type": "request", "command": "initialize", "arguments": {}})
        response = stream.receive()
        event = stream.receive()
    assert response["success"]
    assert event["event"] == "initialized"


def test_dump_properties(agent_listener, tmp_path: Path):
    """Should write the agent and interpreter properties as JSON."""
    output = tmp_path / "properties.json"
    dump_properties(str(output))
    properties = json.loads(output.read_text(encoding="utf-8"))
    assert properties == agent_properties()
    assert properties["process.pid"] == str(os.getpid())
    assert properties[ADDRESS_PROPERTY] == agent_listener.address


@pytest.fixture
def agent_environment(monkeypatch):
    """Restore the startup variables and argv the agent entry point rewrites."""
    monkeypatch.delenv(AGENT_ENV_VAR, raising=False)
    monkeypatch.delenv(AGENT_PID_ENV_VAR, raising=False)
    monkeypatch.setattr(sys, "argv", list(sys.argv))
    monkeypatch.setattr(sys, "_xoptions", {})


@pytest.mark.usefixtures("agent_environment")
def test_agent_entry_point_records_owner(tmp_path: Path):
    """Should publish the bound address together with the owning pid."""
    program = tmp_path / "program.py"
    program.write_text("import sys\nassert sys.argv[1:] == ['--flag']\n", encoding="utf-8")
    agent_main(["--address", "0", str(program), "--flag"])
    listener = running_listener()
    assert listener is not None
    try:
        assert os.environ[AGENT_ENV_VAR] == listener.address
        assert os.environ[AGENT_PID_ENV_VAR] == str(os.getpid())
    finally:
        stop_listener(listener.port)


@pytest.mark.usefixtures("agent_environment")
def test_agent_entry_point_ignores_inherited_address(monkeypatch, tmp_path: Path):
    """Should not reuse an address another agent process already listens on."""
    monkeypatch.setenv(AGENT_ENV_VAR, "127.0.0.1:7007")
    monkeypatch.setenv(AGENT_PID_ENV_VAR, str(os.getppid()))
    with pytest.raises(SystemExit):
        agent_main([str(tmp_path / "program.py")])
    assert running_listener() is None
