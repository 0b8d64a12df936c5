"""
Attach controller: a control connection to another CPython process.

The connection is a GDB session attached by pid. Through it the controller
calls into the target interpreter's C API (``PyRun_SimpleString`` under
``PyGILState_Ensure``), which is how agent properties are queried and how the
agent is loaded. On interpreters that provide ``sys.remote_exec`` the handle
additionally offers an administrative command channel.
"""

from __future__ import annotations

import contextlib
import ctypes
import json
import logging
import os
import sys
import tempfile
import time
from collections.abc import Callable, Iterator
from pathlib import Path

from frame_inspector.config import InspectorSettings
from frame_inspector.errors import AgentInitFailed, AgentLoadFailed, AttachFailed
from frame_inspector.gdb.backend import GDBBackend
from frame_inspector.gdb.gdb_utils import c_string_literal, parse_c_string, parse_pointer

logger = logging.getLogger(__name__)

RTLD_NOW = 0x2
RTLD_NOLOAD = 0x4
PR_SET_PTRACER = 0x59616D61
PR_SET_PTRACER_ANY = -1

START_LISTENER_COMMAND = "start_debug_listener"
PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])


class AttachHandle:
    """A live control connection to one target process."""

    def __init__(self, pid: int, backend: GDBBackend, settings: InspectorSettings):
        """
        Initialize the handle.

        :param pid: Process id of the target.
        :param backend: A started GDB backend attached to the target.
        :param settings: Timeouts for calls into the target.
        """
        self.pid = pid
        self.backend = backend
        self.settings = settings
        self.detached = False

    def __repr__(self) -> str:
        state = "detached" if self.detached else "attached"
        return f"<{self.__class__.__name__} pid={self.pid} {state}>"


class RemoteExecAttachHandle(AttachHandle):
    """Attach handle that can also run administrative commands in the target."""

    def execute_command(self, name: str, arguments: str) -> Path:
        """
        Schedule an administrative command in the target.

        The command is handed to ``sys.remote_exec`` and runs the next time
        the target's main thread reaches a safe point, which cannot happen
        while GDB holds the target; see :meth:`release_until`.

        :return: The scheduled script, for :meth:`cancel_command`.
        :raises ValueError: For an unknown command name.
        :raises OSError: If the script cannot be written or delivered.
        """
        if name != START_LISTENER_COMMAND:
            raise ValueError(f"Unknown administrative command: {name}")

        with tempfile.NamedTemporaryFile(
            "w",
            prefix="frame_inspector_",
            suffix=".py",
            delete=False,
            encoding="utf-8",
        ) as script:
            script.write(agent_bootstrap_statement(arguments, cleanup_path=script.name))
        logger.info("Scheduling %s in pid %d via %s", name, self.pid, script.name)
        try:
            sys.remote_exec(self.pid, script.name)  # type: ignore[attr-defined]
        except BaseException:
            Path(script.name).unlink(missing_ok=True)
            raise
        return Path(script.name)

    def cancel_command(self, script: Path) -> bool:
        """
        Neutralise a scheduled command that has not run yet.

        ``sys.remote_exec`` offers no way to withdraw a script, so its text is
        replaced by a statement that only removes the file.

        :return: False if the script already ran.
        """
        try:
            with open(script, "r+", encoding="utf-8") as pending:
                pending.truncate()
                pending.write(f"__import__('os').remove({str(script)!r})\n")
        except FileNotFoundError:
            return False
        logger.info("Cancelled pending command %s in pid %d", script.name, self.pid)
        return True

    def release_until(self, condition: Callable[[], bool], timeout: float, interval: float = 0.1) -> bool:
        """
        Detach and let the target run until ``condition`` holds.

        The handle stays detached afterwards; call :meth:`reattach` to use it
        again.

        :return: False if ``timeout`` expired first.
        """
        detach(self)
        deadline = time.monotonic() + timeout
        while not condition():
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True

    def reattach(self) -> None:
        """
        Attach to the target again after :meth:`release_until`.

        :raises AttachFailed: If the target refuses the new session.
        """
        self.backend = _attached_backend(self.pid, self.settings)
        self.detached = False


def agent_bootstrap_statement(arguments: str | None, cleanup_path: str | None = None) -> str:
    """
    Python statement that loads the agent inside the target.

    :param arguments: Agent argument string; None only imports the agent.
    :param cleanup_path: File removed once the statement has run.
    """
    statements = [
        "import sys",
        f"{PACKAGE_ROOT!r} in sys.path or sys.path.append({PACKAGE_ROOT!r})",
        "import frame_inspector.agent.listener as _frame_inspector_listener",
    ]
    if arguments is not None:
        statements.append(f"_frame_inspector_listener.start_from_arguments({arguments!r})")
    if cleanup_path is not None:
        statements.append(f"__import__('os').remove({cleanup_path!r})")
    return "; ".join(statements)


def attach(pid: int, settings: InspectorSettings | None = None) -> AttachHandle:
    """
    Open a control connection to a process.

    :raises AttachFailed: If the process does not exist, refuses attachment
        or GDB cannot be started.
    """
    settings = settings or InspectorSettings.from_env()
    if pid == os.getpid():
        raise AttachFailed("A process cannot attach to itself; use the helper program")
    try:
        os.kill(pid, 0)
    except ProcessLookupError as err:
        raise AttachFailed(f"No such process: {pid}", cause=err) from err
    except PermissionError as err:
        raise AttachFailed(f"Not permitted to signal process {pid}", cause=err) from err

    backend = _attached_backend(pid, settings)
    handle_class = RemoteExecAttachHandle if hasattr(sys, "remote_exec") else AttachHandle
    logger.info("Attached to pid %d", pid)
    return handle_class(pid, backend, settings)


def _attached_backend(pid: int, settings: InspectorSettings) -> GDBBackend:
    backend = GDBBackend(settings.gdb_path, timeout=settings.gdb_timeout)
    try:
        backend.start()
    except (OSError, ValueError) as err:
        raise AttachFailed(f"Cannot start GDB at {settings.gdb_path}", cause=err) from err

    success, message = backend.send_command_and_check_for_success(f"attach {pid}")
    if not success:
        backend.stop()
        raise AttachFailed(f"Failed to attach to PID {pid}: {message}", details={"pid": pid})
    return backend


def detach(handle: AttachHandle) -> None:
    """Release the control connection. Safe to call more than once."""
    if handle.detached:
        return
    handle.detached = True
    try:
        success, message = handle.backend.send_command_and_check_for_success("detach")
        if not success:
            logger.warning("Detach from pid %d reported: %s", handle.pid, message)
    except RuntimeError as err:
        logger.warning("Detach from pid %d failed: %s", handle.pid, err)
    finally:
        handle.backend.stop()
    logger.info("Detached from pid %d", handle.pid)


@contextlib.contextmanager
def attached(pid: int, settings: InspectorSettings | None = None) -> Iterator[AttachHandle]:
    """Attach for the duration of a ``with`` block; detach on every exit path."""
    handle = attach(pid, settings)
    try:
        yield handle
    finally:
        detach(handle)


def list_agent_properties(handle: AttachHandle) -> dict[str, str]:
    """
    Query the properties published by the target and its agent.

    :raises AgentLoadFailed: If the interpreter entry point is unavailable.
    :raises AgentInitFailed: If the probe raised inside the target.
    """
    fd, output_path = tempfile.mkstemp(prefix="frame_inspector_", suffix=".json")
    os.close(fd)
    try:
        statement = "; ".join(
            [
                agent_bootstrap_statement(None),
                f"_frame_inspector_listener.dump_properties({output_path!r})",
            ],
        )
        status = _run_statement(handle, "PyRun_SimpleString", statement)
        if status != 0:
            raise AgentInitFailed(f"Property probe failed in pid {handle.pid}", status=status)
        with open(output_path, encoding="utf-8") as output:
            properties = json.load(output)
    except (OSError, ValueError) as err:
        raise AgentInitFailed(
            f"Property probe produced no result in pid {handle.pid}",
            status=-1,
            cause=err,
        ) from err
    finally:
        Path(output_path).unlink(missing_ok=True)
    return {str(key): str(value) for key, value in properties.items()}


def load_agent(handle: AttachHandle, library_path: str, options: str | None = None) -> None:
    """
    Load the inspector agent into the target through a native library.

    The library must export ``PyRun_SimpleString``; for a Python runtime
    library that is already mapped into the target it is reused instead of
    being loaded again.

    :param handle: Attached control connection.
    :param library_path: Absolute path of the native library.
    :param options: Agent argument string passed to the agent on start.
    :raises AgentLoadFailed: If the library or its entry point is rejected.
    :raises AgentInitFailed: If the agent initialization reports failure.
    """
    path = Path(library_path)
    if not path.is_absolute():
        raise AgentLoadFailed(f"Agent library path must be absolute: {library_path}")

    backend = handle.backend
    timeout = handle.settings.agent_load_timeout
    if path.resolve() == Path(sys.executable).resolve():
        library_arg, flags = "0", RTLD_NOW
    else:
        library_arg = c_string_literal(str(path))
        flags = RTLD_NOW | RTLD_NOLOAD if _is_runtime_library(path) else RTLD_NOW

    result, value = backend.evaluate(
        f"$fi_lib = ((void *(*)(const char *, int)) dlopen)({library_arg}, {flags})",
        timeout,
    )
    if not result.success or _pointer_or_zero(value) == 0:
        reason = result.message or _dlerror(handle)
        raise AgentLoadFailed(
            f"Target rejected agent library {library_path}: {reason}",
            details={"library": library_path},
        )

    result, value = backend.evaluate(
        "$fi_entry = ((void *(*)(void *, const char *)) dlsym)($fi_lib, \"PyRun_SimpleString\")",
        timeout,
    )
    if not result.success or _pointer_or_zero(value) == 0:
        reason = result.message or _dlerror(handle)
        raise AgentLoadFailed(
            f"Library {library_path} has no PyRun_SimpleString entry point: {reason}",
            details={"library": library_path},
        )

    status = _run_statement(handle, "$fi_entry", agent_bootstrap_statement(options))
    if status != 0:
        raise AgentInitFailed(
            f"Agent initialization in pid {handle.pid} returned {status}",
            status=status,
            details={"library": library_path, "options": options},
        )
    logger.info("Agent loaded into pid %d from %s", handle.pid, library_path)


def allow_any_tracer() -> bool:
    """
    Let any process of the same user ptrace this one (Yama ``ptrace_scope=1``).

    Returns False where the call is unavailable or refused.
    """
    if not sys.platform.startswith("linux"):
        return False
    try:
        libc = ctypes.CDLL(None, use_errno=True)
        status = libc.prctl(PR_SET_PTRACER, ctypes.c_ulong(PR_SET_PTRACER_ANY), 0, 0, 0)
    except (OSError, AttributeError) as err:
        logger.debug("prctl unavailable: %s", err)
        return False
    if status != 0:
        logger.debug("PR_SET_PTRACER refused: errno %d", ctypes.get_errno())
        return False
    return True


def _run_statement(handle: AttachHandle, entry: str, statement: str) -> int:
    """Run Python source in the target while holding its GIL; returns the status."""
    backend = handle.backend
    timeout = handle.settings.agent_load_timeout
    result, _ = backend.evaluate("$fi_gil = ((int (*)(void)) PyGILState_Ensure)()", timeout)
    if not result.success:
        raise AgentLoadFailed(f"Cannot take the GIL in pid {handle.pid}: {result.message}")
    try:
        result, value = backend.evaluate(
            f"((int (*)(const char *)) {entry})({c_string_literal(statement)})",
            timeout,
        )
    finally:
        released, _ = backend.evaluate("((void (*)(int)) PyGILState_Release)($fi_gil)", timeout)
        if not released.success:
            logger.warning("Releasing the GIL in pid %d failed: %s", handle.pid, released.message)
    if not result.success:
        raise AgentLoadFailed(f"Calling {entry} in pid {handle.pid} failed: {result.message}")
    return parse_pointer(value)


def _is_runtime_library(path: Path) -> bool:
    return path.name.startswith(("libpython", "python3")) or path.name == "Python"


def _pointer_or_zero(value: str) -> int:
    try:
        return parse_pointer(value)
    except ValueError:
        return 0


def _dlerror(handle: AttachHandle) -> str:
    result, value = handle.backend.evaluate("((char *(*)(void)) dlerror)()")
    if not result.success:
        return result.message
    return parse_c_string(value) or "unknown dynamic loader error"
