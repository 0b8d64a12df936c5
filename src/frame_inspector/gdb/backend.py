"""GDBBackend module: drive an attach session through GDB/MI."""

import logging
import threading
import time
from queue import Empty, Queue
from typing import Any

from pygdbmi.gdbcontroller import GdbController

from frame_inspector.common import CommandResult
from frame_inspector.gdb.gdb_utils import (
    find_result_payload,
    is_gdb_responses_successful_with_message,
    quote_mi_argument,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_WAITING_RESPONSE_FROM_GDB = 20.0


class GDBBackend:
    """Class for interacting with GDB via pygdbmi."""

    def __init__(self, gdb_path: str, timeout: float = DEFAULT_TIMEOUT_WAITING_RESPONSE_FROM_GDB):
        """
        Initialize the GDBBackend.

        :param gdb_path: Path to the GDB executable.
        :param timeout: Default time to wait for a command result.
        """
        self._gdb_lock = threading.Lock()
        self._gdb_path: str = gdb_path
        self._timeout = timeout
        self._gdbmi: GdbController | None = None
        self._stop_monitoring = threading.Event()
        self._monitor_thread: threading.Thread | None = None
        self._response_queue: Queue[dict[str, Any]] = Queue()

    def start(self):
        """Start GDB and performs basic setup."""
        self._gdbmi = GdbController(
            command=[self._gdb_path, "--nx", "--quiet", "--interpreter=mi3"],
        )
        self._start_monitoring()
        self._send_initial_commands()

    def stop(self):
        """Stop GDB and terminates the process."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join()
            self._monitor_thread = None
        if self._gdbmi:
            self._gdbmi.exit()
            self._gdbmi = None

    def _start_monitoring(self):
        """Start a thread that moves GDB output into the response queue."""
        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(target=self._monitor_gdb_events, daemon=True)
        self._monitor_thread.start()

    def _monitor_gdb_events(self):
        """Background process for monitoring GDB events."""
        while not self._stop_monitoring.is_set():
            responses = self._get_gdb_responses()
            for response in responses:
                self._process_gdb_response(response)
            time.sleep(0.1)

    def _get_gdb_responses(self) -> list:
        """Fetch responses from GDB."""
        gdbmi = self._gdbmi
        if not gdbmi:
            return []
        return gdbmi.get_gdb_response(timeout_sec=0.2, raise_error_on_timeout=False)

    def _process_gdb_response(self, response: dict):
        """Process individual GDB response."""
        logger.debug("response: %s", response)
        self._response_queue.put(response)

    def send_command_and_get_result(
        self,
        command: str,
        timeout: float | None = None,
        expected_response=("done", "error", "running"),
    ) -> list[dict]:
        """
        Send a command to GDB and wait for the response.

        The response queue is cleared before the command is written, then
        responses are collected until one of the expected result records
        arrives or the timeout expires.

        :param command: The GDB/MI command to send (e.g., "attach 1234").
        :param timeout: Maximum time (in seconds) to wait for a response.
        :param expected_response: Result classes that end the wait.
        :return: All responses read, ending with the result record or a
            synthesized timeout error.
        :raises RuntimeError: If GDB is not running.
        """
        if not self._gdbmi:
            raise RuntimeError("GDB is not running")

        self._clear_response_queue()
        self._send_command(command)
        return self._read_responses_from_queue(
            self._timeout if timeout is None else timeout,
            expected_response,
            command,
        )

    def _send_command(self, command: str) -> None:
        logger.debug("Sending command to gdb: %s", command)
        if not self._gdbmi:
            raise RuntimeError("GDB is not running")
        with self._gdb_lock:
            self._gdbmi.write(command, read_response=False)

    def _read_responses_from_queue(
        self,
        timeout: float,
        expected_response: tuple,
        command: str,
        expected_type="result",
    ) -> list[dict]:
        """Read responses from the GDB queue within the specified timeout."""
        start_time = time.time()
        all_responses = []

        while time.time() - start_time <= timeout:
            try:
                response = self._response_queue.get(timeout=0.1)
            except Empty:
                continue

            all_responses.append(response)

            if self._has_response_of_interest(response, expected_response, expected_type):
                return all_responses

        return self._handle_timeout_error(timeout, command)

    def _handle_timeout_error(self, timeout: float, command: str) -> list[dict]:
        """Generate an error message when the response timeout is exceeded."""
        error_message = f"Expected response not received within {timeout} seconds for command '{command}'."
        logger.warning(error_message)
        return [
            {
                "type": "result",
                "message": "error",
                "payload": {"msg": error_message},
                "token": None,
                "stream": "stdout",
            },
        ]

    def _clear_response_queue(self) -> None:
        """Clear the GDB response queue."""
        while not self._response_queue.empty():
            try:
                self._response_queue.get_nowait()
            except Empty:
                break

    def _has_response_of_interest(
        self,
        response: dict,
        expected_response: tuple,
        expected_type="result",
    ) -> bool:
        """Check whether the response contains one of the expected values."""
        return (
            response.get("type") == expected_type and response.get("message") in expected_response
        )

    def send_command_and_check_for_success(
        self,
        command: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Send a command to GDB and checks if the response indicates success."""
        responses = self.send_command_and_get_result(command, timeout)
        return is_gdb_responses_successful_with_message(responses)

    def evaluate(self, expression: str, timeout: float | None = None) -> tuple[CommandResult, str]:
        """
        Evaluate a C expression in the context of the attached process.

        :param expression: Expression text, function calls included.
        :param timeout: Maximum time to wait for the result.
        :return: Command result and the printed value ("" on failure).
        """
        command = f"-data-evaluate-expression {quote_mi_argument(expression)}"
        responses = self.send_command_and_get_result(command, timeout)
        result = is_gdb_responses_successful_with_message(responses)
        if not result.success:
            return result, ""
        return result, find_result_payload(responses).get("value", "")

    def _send_initial_commands(self):
        """Perform initial GDB setup."""
        self.send_command_and_get_result("-gdb-set confirm off")
        self.send_command_and_get_result("set pagination off")
        self.send_command_and_get_result("set auto-solib-add on")
        # Other threads must keep running during inferior calls so that a
        # thread holding the GIL can release it.
        self.send_command_and_get_result("set scheduler-locking off")
        # A signal arriving during an inferior call must not leave the
        # target stopped inside the called function.
        self.send_command_and_get_result("set unwindonsignal on")
        logger.debug("GDB initialized and configured.")
