"""
Entry point for the frame_inspector helper program.

The helper runs as a separate process because a process cannot attach a
debugger to itself. It reports to its parent through exit codes and
delimited blocks on stdout; diagnostics go to stderr through logging.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from frame_inspector.bootstrap import enable_channel, find_free_port, settle
from frame_inspector.common import (
    EXIT_CONNECT_FAILED,
    EXIT_CONNECT_OTHER_ERROR,
    EXIT_ENABLE_FAILED,
    EXIT_ENABLE_ONLY_FAILED,
    EXIT_GENERAL_ERROR,
    EXIT_OK,
    EXIT_USAGE,
    LOCAL_SEPARATOR,
    LOCALS_END,
    LOCALS_START,
    NULL_VALUE,
    PORT_LINE_PREFIX,
    PROPERTIES_END,
    PROPERTIES_START,
)
from frame_inspector.config import InspectorSettings
from frame_inspector.dap.client import (
    LocalVariableSample,
    connected,
    find_thread,
    suspend_and_sample,
)
from frame_inspector.errors import InspectorError, ProtocolConnectFailed
from frame_inspector.gdb.attach import attached, detach, list_agent_properties, load_agent

logger = logging.getLogger("frame_inspector.helper")


class HelperArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with the helper's exit code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> HelperArgumentParser:
    parser = HelperArgumentParser(
        prog="frame_inspector",
        description="Inspect the top frame of a thread in a running Python process",
    )
    parser.add_argument(
        "--connect",
        metavar="HOST:PORT",
        help="sample THREAD over an already listening debug channel",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="log progress to stderr")
    parser.add_argument("command", nargs="?", help="list-agents, load-agent, enable-channel, get-locals")
    parser.add_argument("arguments", nargs="*")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the helper and return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        settings = InspectorSettings.from_env()
    except InspectorError as err:
        print(f"Error: {err}", file=sys.stderr, flush=True)
        return EXIT_USAGE

    if args.connect:
        if args.command is None or args.arguments:
            parser.error("--connect takes exactly one THREAD argument")
        return run_connect(args.connect, args.command, settings)

    commands = {
        "list-agents": (run_list_agents, 1, 1),
        "load-agent": (run_load_agent, 2, 3),
        "enable-channel": (run_enable_channel, 1, 2),
        "get-locals": (run_get_locals, 2, 3),
    }
    if args.command not in commands:
        parser.error(f"unknown command: {args.command}")
    handler, minimum, maximum = commands[args.command]
    if not minimum <= len(args.arguments) <= maximum:
        parser.error(f"{args.command} takes {minimum} to {maximum} arguments")

    try:
        pid = int(args.arguments[0])
    except ValueError:
        parser.error(f"invalid pid: {args.arguments[0]}")
    return handler(pid, args.arguments[1:], settings)


def run_list_agents(pid: int, arguments: list[str], settings: InspectorSettings) -> int:
    """Print the properties published by the target and its agent."""
    try:
        with attached(pid, settings) as handle:
            properties = list_agent_properties(handle)
    except InspectorError as err:
        return _fail(err, EXIT_GENERAL_ERROR)

    print(PROPERTIES_START, flush=True)
    for key, value in sorted(properties.items()):
        print(f"{key}{LOCAL_SEPARATOR}{value}", flush=True)
    print(PROPERTIES_END, flush=True)
    return EXIT_OK


def run_load_agent(pid: int, arguments: list[str], settings: InspectorSettings) -> int:
    """Load a native agent library into the target."""
    library_path = arguments[0]
    options = arguments[1] if len(arguments) > 1 else None
    try:
        with attached(pid, settings) as handle:
            load_agent(handle, library_path, options)
    except InspectorError as err:
        return _fail(err, EXIT_GENERAL_ERROR)
    print(f"Agent {library_path} loaded into {pid}", flush=True)
    return EXIT_OK


def run_enable_channel(pid: int, arguments: list[str], settings: InspectorSettings) -> int:
    """Make the target listen for debug clients and print the port."""
    port = _parse_port(arguments[0]) if arguments else find_free_port(settings.host)
    if port is None:
        print(f"Error: invalid port: {arguments[0]}", file=sys.stderr, flush=True)
        return EXIT_USAGE
    try:
        with attached(pid, settings) as handle:
            enabled = enable_channel(handle, port)
    except InspectorError as err:
        return _fail(err, EXIT_ENABLE_ONLY_FAILED)
    if not enabled:
        print(f"Error: could not enable a debug channel in {pid}", file=sys.stderr, flush=True)
        return EXIT_ENABLE_ONLY_FAILED
    settle(settings.settle_delay)
    print(f"{PORT_LINE_PREFIX}{port}", flush=True)
    return EXIT_OK


def run_get_locals(pid: int, arguments: list[str], settings: InspectorSettings) -> int:
    """
    Attach, open a debug channel, sample one thread's top frame and print it.

    :param pid: Target process id.
    :param arguments: Thread name and an optional port.
    :param settings: Timeouts and paths.
    """
    thread_name = arguments[0]
    port = _parse_port(arguments[1]) if len(arguments) > 1 else find_free_port(settings.host)
    if port is None:
        print(f"Error: invalid port: {arguments[1]}", file=sys.stderr, flush=True)
        return EXIT_USAGE

    try:
        with attached(pid, settings) as handle:
            print(f"Attached to {pid}", flush=True)
            if not enable_channel(handle, port):
                print(f"Error: could not enable a debug channel in {pid}", file=sys.stderr, flush=True)
                return EXIT_ENABLE_FAILED
            detach(handle)
        print(f"Debug channel enabled on port {port}", flush=True)
        settle(settings.settle_delay)
        samples = _sample(settings.host, port, thread_name, settings)
    except InspectorError as err:
        return _fail(err, EXIT_GENERAL_ERROR, thread_name)

    print_locals(samples)
    return EXIT_OK


def run_connect(address: str, thread_name: str, settings: InspectorSettings) -> int:
    """Sample a thread over a channel that is already listening."""
    host, _, port_text = address.rpartition(":")
    port = _parse_port(port_text)
    if not host or port is None:
        print(f"Error: invalid address: {address}", file=sys.stderr, flush=True)
        return EXIT_USAGE

    try:
        samples = _sample(host, port, thread_name, settings)
    except ProtocolConnectFailed as err:
        return _fail(err, EXIT_CONNECT_FAILED)
    except InspectorError as err:
        return _fail(err, EXIT_CONNECT_OTHER_ERROR, thread_name)

    print_locals(samples)
    return EXIT_OK


def print_locals(samples: list[LocalVariableSample]) -> None:
    """Print the delimited locals block read by the orchestrator."""
    print(LOCALS_START, flush=True)
    for sample in samples:
        value = NULL_VALUE if sample.value is None else sample.value
        print(f"{sample.name}{LOCAL_SEPARATOR}{value}", flush=True)
    print(LOCALS_END, flush=True)


def _sample(host: str, port: int, thread_name: str, settings: InspectorSettings) -> list[LocalVariableSample]:
    with connected(host, port, settings.connect_timeout) as session:
        print(f"Connected to {host}:{port}", flush=True)
        thread = find_thread(session, thread_name)
        return suspend_and_sample(session, thread)


def _fail(err: InspectorError, exit_code: int, thread_name: str | None = None) -> int:
    logger.debug("Helper failed", exc_info=err)
    context = f" (thread {thread_name!r})" if thread_name else ""
    print(f"Error{context}: {err}", file=sys.stderr, flush=True)
    return exit_code


def _parse_port(text: str) -> int | None:
    try:
        port = int(text)
    except ValueError:
        return None
    return port if 0 < port < 65536 else None


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.environ.get("FRAME_INSPECTOR_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    sys.exit(main())
