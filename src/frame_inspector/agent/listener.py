"""
Debug channel listener living inside the inspected process.

``start_listener`` binds a TCP socket and serves DAP clients one at a time
from a daemon thread. When a client goes away every thread it suspended is
resumed, so a crashed helper never leaves the process hanging.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import sys
import threading

from frame_inspector.agent.request_handler import AgentRequestHandler
from frame_inspector.agent.suspender import DEFAULT_ARRIVAL_TIMEOUT, ThreadSuspender
from frame_inspector.common import AGENT_ENV_VAR, AGENT_XOPTION
from frame_inspector.config import InspectorSettings
from frame_inspector.dap.wire import ConnectionClosed, MessageStream

logger = logging.getLogger(__name__)

ADDRESS_PROPERTY = "frame_inspector.agent.address"
AGENT_THREAD_NAME = "frame_inspector-agent"
DEFAULT_HOST = "127.0.0.1"

# Published properties of the running agent, read by `list-agents`
AGENT_PROPERTIES: dict[str, str] = {}

_listeners: dict[int, AgentListener] = {}
_listeners_lock = threading.Lock()


class AgentListener:
    """Class for serving debug clients via Debug Adapter Protocol (DAP)."""

    def __init__(self, host: str, port: int, request_handler: AgentRequestHandler):
        """Listener initialization."""
        self.host = host
        self.port = port
        self.request_handler = request_handler
        self.server_socket: socket.socket | None = None
        self.client_conn: socket.socket | None = None
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def start(self) -> None:
        """Bind the socket and start serving clients in the background."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(1)
        self.port = self.server_socket.getsockname()[1]
        logger.info("Debug agent is listening on %s", self.address)

        self._thread = threading.Thread(
            target=self._serve,
            name=AGENT_THREAD_NAME,
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the listener and resume any suspended thread."""
        self._stopped.set()
        self.request_handler.release_all()
        if self.client_conn:
            self._close_quietly(self.client_conn)
        if self.server_socket:
            self._close_quietly(self.server_socket)
        logger.info("Debug agent on %s stopped", self.address)

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                client_conn, client_address = self.server_socket.accept()
            except OSError as err:
                if not self._stopped.is_set():
                    logger.error("Debug agent stopped accepting: %s", err)
                return
            logger.info("Client connected: %s", client_address)
            self.client_conn = client_conn
            try:
                self.handle_requests(MessageStream(client_conn))
            finally:
                self.request_handler.release_all()
                self._close_quietly(client_conn)
                self.client_conn = None
                logger.info("Client disconnected: %s", client_address)

    def handle_requests(self, stream: MessageStream) -> None:
        """Process client requests and sends responses."""
        while True:
            try:
                request = stream.receive()
            except (ConnectionClosed, OSError):
                return
            except ValueError as err:
                logger.warning("Dropping client after malformed message: %s", err)
                return

            for message in self.request_handler.handle_request(request):
                stream.send(message)
            if request.get("command") == "disconnect":
                return

    def _close_quietly(self, sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError as err:
            logger.debug("Closing socket failed: %s", err)


def start_listener(
    port: int = 0,
    host: str = DEFAULT_HOST,
    arrival_timeout: float = DEFAULT_ARRIVAL_TIMEOUT,
) -> AgentListener:
    """
    Start the agent listener, or return the one already bound to ``port``.

    :param port: TCP port; 0 picks a free one.
    :param host: Interface to bind.
    :param arrival_timeout: See :class:`ThreadSuspender`.
    """
    with _listeners_lock:
        if port and port in _listeners:
            return _listeners[port]
        listener = AgentListener(
            host,
            port,
            AgentRequestHandler(ThreadSuspender(arrival_timeout)),
        )
        listener.start()
        _listeners[listener.port] = listener
        AGENT_PROPERTIES[ADDRESS_PROPERTY] = listener.address
        return listener


def running_listener() -> AgentListener | None:
    """The first listener started in this process, if any is running."""
    with _listeners_lock:
        return next(iter(_listeners.values()), None)


def stop_listener(port: int) -> None:
    with _listeners_lock:
        listener = _listeners.pop(port, None)
        if _listeners:
            AGENT_PROPERTIES[ADDRESS_PROPERTY] = next(iter(_listeners.values())).address
        else:
            AGENT_PROPERTIES.pop(ADDRESS_PROPERTY, None)
    if listener:
        listener.stop()


def parse_agent_arguments(arguments: str) -> dict[str, str]:
    """
    Split an agent argument string such as ``server=y,address=5005``.

    :raises ValueError: For an entry without ``=``.
    """
    options = {}
    for entry in filter(None, arguments.split(",")):
        key, separator, value = entry.partition("=")
        if not separator:
            raise ValueError(f"Malformed agent option: {entry!r}")
        options[key.strip()] = value.strip()
    return options


def start_from_arguments(arguments: str) -> AgentListener:
    """
    Start a listener from an agent argument string.

    Recognized options: ``transport`` (only ``dt_socket``), ``server``
    (only ``y``), ``suspend`` (``y`` waits for the first client) and
    ``address`` as ``port`` or ``host:port``.

    :raises ValueError: For unsupported or malformed options.
    """
    options = parse_agent_arguments(arguments)
    if options.get("transport", "dt_socket") != "dt_socket":
        raise ValueError(f"Unsupported transport: {options['transport']}")
    if options.get("server", "y") != "y":
        raise ValueError("Only server=y is supported")

    host, _, port = options.get("address", "0").rpartition(":")
    if host in {"", "*"}:
        host = DEFAULT_HOST
    arrival_timeout = InspectorSettings.from_env().suspend_arrival_timeout
    listener = start_listener(int(port), host, arrival_timeout)
    if options.get("suspend", "n") == "y":
        logger.info("Waiting for a debug client on %s", listener.address)
        listener.request_handler.connected.wait()
    return listener


def agent_properties() -> dict[str, str]:
    """Properties describing this process and its agent."""
    properties = {
        "process.pid": str(os.getpid()),
        "python.version": sys.version.split()[0],
        "python.executable": sys.executable,
    }
    startup = sys._xoptions.get(AGENT_XOPTION) or os.environ.get(AGENT_ENV_VAR)  # noqa: WPS437
    if startup and startup is not True:
        properties["frame_inspector.startup.address"] = str(startup)
    properties.update(AGENT_PROPERTIES)
    return properties


def dump_properties(path: str) -> None:
    """Write :func:`agent_properties` as JSON to ``path``."""
    with open(path, "w", encoding="utf-8") as output:
        json.dump(agent_properties(), output)
