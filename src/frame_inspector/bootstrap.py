"""
Debug-channel bootstrap: make an attached process start listening.

Strategies are tried in order and report a tri-state outcome. Only the
exhaustion of all strategies (or an abort) is reported to the caller; the
reasons of individual failures go to the log.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import socket
import sys
import sysconfig
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from frame_inspector.common import AGENT_ENV_VAR, AGENT_PID_ENV_VAR, AGENT_XOPTION
from frame_inspector.errors import AttachFailed, InspectorError
from frame_inspector.gdb.attach import START_LISTENER_COMMAND, AttachHandle, load_agent

logger = logging.getLogger(__name__)

AGENT_ARGUMENTS = "transport=dt_socket,server=y,suspend=n,address={port}"
DEFAULT_SETTLE_DELAY = 0.5
_ADDRESS = re.compile(r"^(?:([^*:]+):)?(\d+)$")
_ANY_HOST = re.compile(r"^\*:(\d+)$")


class StrategyOutcome(enum.Enum):
    SUCCESS = "success"
    TRY_NEXT = "try-next"
    ABORT = "abort"


@dataclass(frozen=True)
class DebugChannelConfig:
    """Where a debug channel listens and how to reach it."""

    host: str
    port: str
    transport: str = "dt_socket"
    is_server: bool = True

    @property
    def connectable(self) -> bool:
        """A channel on port 0 listens on a port nobody knows yet."""
        return self.is_server and self.port != "0"


Strategy = Callable[[AttachHandle, int], StrategyOutcome]


def agent_arguments(port: int) -> str:
    return AGENT_ARGUMENTS.format(port=port)


def administrative_command_strategy(handle: AttachHandle, port: int) -> StrategyOutcome:
    """
    Start the listener through the handle's administrative command channel.

    The command only counts once the port accepts connections. A command
    that never gets to run is neutralised and the target attached again for
    the next strategy.
    """
    execute_command = getattr(handle, "execute_command", None)
    if execute_command is None:
        logger.info("Administrative commands are not available for pid %d", handle.pid)
        return StrategyOutcome.TRY_NEXT
    try:
        script = execute_command(START_LISTENER_COMMAND, agent_arguments(port))
    except Exception as err:  # noqa: B902 any failure means trying the next strategy
        logger.info("Administrative command failed for pid %d: %s", handle.pid, err)
        return StrategyOutcome.TRY_NEXT

    settings = handle.settings
    if handle.release_until(lambda: is_listening(settings.host, port), settings.command_timeout):
        logger.info("Administrative command started listener on port %d", port)
        return StrategyOutcome.SUCCESS

    logger.info("No listener on port %d after %g seconds; cancelling", port, settings.command_timeout)
    handle.cancel_command(script)
    try:
        handle.reattach()
    except AttachFailed as err:
        logger.error("Cannot attach to pid %d again: %s", handle.pid, err)
        return StrategyOutcome.ABORT
    return StrategyOutcome.TRY_NEXT


def native_agent_strategy(handle: AttachHandle, port: int) -> StrategyOutcome:
    """Load the agent through the runtime's own native library."""
    library = guess_agent_library_path()
    if library is None:
        logger.error("No Python runtime library found under %s", sys.base_prefix)
        return StrategyOutcome.ABORT
    try:
        load_agent(handle, str(library), agent_arguments(port))
    except InspectorError as err:
        logger.error("Loading the agent from %s failed: %s", library, err)
        return StrategyOutcome.ABORT
    return StrategyOutcome.SUCCESS


STRATEGIES: tuple[Strategy, ...] = (
    administrative_command_strategy,
    native_agent_strategy,
)


def enable_channel(
    handle: AttachHandle,
    port: int,
    strategies: tuple[Strategy, ...] = STRATEGIES,
) -> bool:
    """
    Make the attached process listen for debug clients on ``port``.

    A True result does not mean the socket is bound yet; call
    :func:`settle` before connecting.
    """
    for strategy in strategies:
        outcome = strategy(handle, port)
        logger.debug("%s -> %s", strategy.__name__, outcome.value)
        if outcome is StrategyOutcome.SUCCESS:
            return True
        if outcome is StrategyOutcome.ABORT:
            return False
    return False


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a port that is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind((host, 0))
        return probe.getsockname()[1]


def is_listening(host: str, port: int, timeout: float = 0.5) -> bool:
    """Whether something accepts TCP connections on ``host:port``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def settle(delay: float = DEFAULT_SETTLE_DELAY) -> None:
    """Give a freshly enabled listener time to bind its socket."""
    time.sleep(delay)


def agent_library_candidates(base: Path | None = None) -> list[Path]:
    """Possible locations of the runtime library, in probing order."""
    base = Path(sys.base_prefix) if base is None else base
    libdir = base / "lib"
    names = [
        name
        for name in (
            sysconfig.get_config_var("LDLIBRARY"),
            sysconfig.get_config_var("INSTSONAME"),
        )
        if name
    ]
    version = f"{sys.version_info.major}.{sys.version_info.minor}"
    abiflags = getattr(sys, "abiflags", "")
    names.extend([f"libpython{version}{abiflags}.so.1.0", f"libpython{version}{abiflags}.so"])

    candidates = [libdir / name for name in names]
    multiarch = sysconfig.get_config_var("MULTIARCH")
    if multiarch:
        candidates.extend(libdir / multiarch / name for name in names)
    candidates.append(base / f"python{sys.version_info.major}{sys.version_info.minor}.dll")
    candidates.append(base / "Python")
    candidates.append(libdir / f"libpython{version}{abiflags}.dylib")
    return candidates


def guess_agent_library_path(base: Path | None = None) -> Path | None:
    """
    Locate the shared library that carries the interpreter.

    Falls back to the interpreter executable itself when Python is linked
    statically, since it then exports the C API.
    """
    for candidate in agent_library_candidates(base):
        if candidate.is_file() and candidate.suffix != ".a":
            return candidate
    executable = Path(sys.executable)
    if base is None and executable.is_file():
        return executable.resolve()
    return None


def parse_channel_address(address: str) -> DebugChannelConfig | None:
    """
    Parse ``[host:]port`` (``*`` meaning any interface) into a config.

    Returns None for addresses in another format.
    """
    address = address.strip()
    any_host = _ANY_HOST.match(address)
    if any_host:
        return DebugChannelConfig("localhost", any_host.group(1))
    match = _ADDRESS.match(address)
    if not match:
        return None
    host, port = match.groups()
    return DebugChannelConfig(host or "localhost", port)


def startup_belongs_here() -> bool:
    """Whether the startup address was recorded by this process, not a parent."""
    return os.environ.get(AGENT_PID_ENV_VAR) == str(os.getpid())


def find_existing_channel() -> DebugChannelConfig | None:
    """
    Detect a debug channel this process already has.

    Checks a running listener first, then the startup configuration
    (``-X frame_inspector_agent=...`` or the environment variable). The
    startup configuration only counts when ``FRAME_INSPECTOR_AGENT_PID``
    names this process; children of an agent-started program inherit both
    without a listener of their own.
    """
    listener_module = sys.modules.get("frame_inspector.agent.listener")
    listener = listener_module.running_listener() if listener_module else None
    if listener is not None:
        return DebugChannelConfig(listener.host, str(listener.port))

    if not startup_belongs_here():
        return None
    startup = sys._xoptions.get(AGENT_XOPTION)  # noqa: WPS437
    if not isinstance(startup, str):
        startup = os.environ.get(AGENT_ENV_VAR)
    if not startup:
        return None
    config = parse_channel_address(startup)
    if config is None:
        logger.warning("Ignoring malformed agent address %r", startup)
    return config
