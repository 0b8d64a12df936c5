"""Shared pytest fixtures for frame_inspector unit tests."""

from collections.abc import Generator
from unittest.mock import Mock

import pytest

from frame_inspector.agent.listener import AgentListener, start_listener, stop_listener
from frame_inspector.config import InspectorSettings
from frame_inspector.gdb.attach import AttachHandle
from frame_inspector.gdb.backend import GDBBackend


@pytest.fixture
def backend_mock() -> Mock:
    """Provide a mock instance of the GDBBackend interface."""
    return Mock(spec=GDBBackend)


@pytest.fixture
def settings() -> InspectorSettings:
    """Settings with short timeouts suited to tests."""
    return InspectorSettings(
        gdb_path="/usr/bin/gdb",
        settle_delay=0,
        connect_timeout=5.0,
        helper_timeout=30.0,
        suspend_arrival_timeout=0.1,
    )


@pytest.fixture
def attach_handle(backend_mock: Mock, settings: InspectorSettings) -> AttachHandle:  # noqa: WPS442
    """Provide an attach handle driving a mocked backend."""
    return AttachHandle(4242, backend_mock, settings)


@pytest.fixture
def agent_listener() -> Generator[AgentListener, None, None]:
    """Run an in-process agent listener on a free port."""
    listener = start_listener(0)
    yield listener
    stop_listener(listener.port)
