"""
Helper process orchestration: the public face of the frame inspector.

Inspection of the running process happens in a helper child process because
a process cannot attach a debugger to itself. The helper's stdout and stderr
are drained concurrently by two reader threads; a child that fills one pipe
while the parent blocks on the other would otherwise deadlock.
"""

from __future__ import annotations

import atexit
import logging
import os
import subprocess
import sys
import threading
import types
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO

from frame_inspector.agent.suspender import pinned_frame
from frame_inspector.bootstrap import find_existing_channel, find_free_port
from frame_inspector.common import (
    LOCAL_SEPARATOR,
    LOCALS_END,
    LOCALS_START,
    NULL_VALUE,
    PORT_LINE_PREFIX,
)
from frame_inspector.config import InspectorSettings
from frame_inspector.errors import HelperNonZeroExit, HelperTimeout, InspectorError, UnresolvableRoutine
from frame_inspector.gdb.attach import PACKAGE_ROOT, allow_any_tracer
from frame_inspector.packager import create_helper_archive

logger = logging.getLogger(__name__)

_READER_JOIN_TIMEOUT = 5.0
# Helper zipapp of this process, built on first use
_helper_archives: dict[str, str] = {}
_helper_archive_lock = threading.Lock()


@dataclass(frozen=True)
class HelperInvocationResult:
    """Everything one helper run produced."""

    exit_code: int
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    locals: dict[str, str | None] = field(default_factory=dict)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)


def build_command(helper_args: list[str], archive: str | None = None) -> list[str]:
    """
    Command line that runs the helper with ``helper_args``.

    :param archive: A helper zipapp built by the packager; without it the
        installed package is run with ``-m``.
    """
    if archive is not None:
        return [sys.executable, archive, *helper_args]
    return [sys.executable, "-m", "frame_inspector", *helper_args]


def helper_environment(settings: InspectorSettings | None = None) -> dict[str, str]:
    """Environment of the helper: ours, the settings, and the package on the path."""
    env = dict(os.environ)
    if settings is not None:
        env.update(settings.to_env())
    python_path = env.get("PYTHONPATH")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [PACKAGE_ROOT, python_path]))
    env["PYTHONUNBUFFERED"] = "1"
    return env


def helper_archive() -> str | None:
    """
    Path of the packaged helper, built once per process and removed at exit.

    Returns None if the archive cannot be written; the installed package is
    run instead.
    """
    with _helper_archive_lock:
        archive = _helper_archives.get("helper")
        if archive is not None and os.path.exists(archive):
            return archive
        try:
            archive = str(create_helper_archive())
        except OSError as err:
            logger.warning("Cannot build the helper archive, using the installed package: %s", err)
            return None
        atexit.register(_remove_file, archive)
        _helper_archives["helper"] = archive
        return archive


def parse_locals_block(lines: list[str]) -> dict[str, str | None]:
    """
    Parse the ``name = value`` lines between the locals markers.

    Lines outside the block are progress output and ignored; ``null`` is
    decoded as None. Returns an empty mapping when no block was printed.
    """
    variables: dict[str, str | None] = {}
    inside = False
    for line in lines:
        if line == LOCALS_START:
            inside = True
        elif line == LOCALS_END:
            break
        elif inside:
            name, separator, value = line.partition(LOCAL_SEPARATOR)
            if not separator:
                logger.debug("Ignoring malformed locals line: %r", line)
                continue
            variables[name] = None if value == NULL_VALUE else value
    return variables


def run_helper(
    helper_args: list[str],
    timeout: float | None = None,
    archive: str | None = None,
    settings: InspectorSettings | None = None,
    command: list[str] | None = None,
) -> HelperInvocationResult:
    """
    Run the helper to completion and collect its output.

    :param helper_args: Arguments of the helper program.
    :param timeout: Seconds to wait; defaults to the configured helper timeout.
    :param archive: Optional helper zipapp.
    :param settings: Settings handed to the helper through its environment.
    :param command: Full command line, replacing the one built from the
        other arguments.
    :raises HelperTimeout: If the helper did not finish in time; it is killed.
    :raises HelperNonZeroExit: If the helper exited with a nonzero status.
    """
    settings = settings or InspectorSettings.from_env()
    timeout = settings.helper_timeout if timeout is None else timeout
    command = command or build_command(helper_args, archive)
    logger.info("Launching helper: %s", " ".join(command))

    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=helper_environment(settings),
        )
    except OSError as err:
        raise InspectorError(f"Cannot launch helper {command[0]}", cause=err) from err

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        _start_reader(process.stdout, stdout_lines, "stdout"),
        _start_reader(process.stderr, stderr_lines, "stderr"),
    ]
    try:
        exit_code = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired as err:
        process.kill()
        process.wait()
        _join_readers(readers)
        raise HelperTimeout(
            f"Helper did not finish within {timeout:g} seconds and was killed",
            stdout_lines=list(stdout_lines),
            stderr_lines=list(stderr_lines),
            cause=err,
        ) from err
    finally:
        if process.poll() is None:
            process.kill()
    _join_readers(readers)

    result = HelperInvocationResult(
        exit_code=exit_code,
        stdout_lines=stdout_lines,
        stderr_lines=stderr_lines,
        locals=parse_locals_block(stdout_lines),
    )
    logger.info("Helper finished with exit code %d", exit_code)
    if exit_code != 0:
        raise HelperNonZeroExit(
            f"Helper {' '.join(helper_args)} failed with exit code {exit_code}: {result.stderr}",
            result=result,
        )
    return result


def locals(  # noqa: WPS125 public name mirrors the builtin
    thread_name: str | None = None,
    settings: InspectorSettings | None = None,
) -> dict[str, str | None]:
    """
    Read the local variables of a thread of this process.

    With no ``thread_name`` the calling thread is inspected and the result
    describes the caller's frame. Reuses a debug channel the process already
    listens on; otherwise the helper attaches and opens one.

    :raises HelperTimeout: If the helper hangs.
    :raises HelperNonZeroExit: If any step of the inspection failed.
    """
    settings = settings or InspectorSettings.from_env()
    thread_name = thread_name or threading.current_thread().name

    channel = find_existing_channel()
    if channel is not None and channel.connectable:
        helper_args = ["--connect", f"{channel.host}:{channel.port}", thread_name]
    else:
        port = find_free_port(settings.host)
        helper_args = ["get-locals", str(os.getpid()), thread_name, str(port)]
        allow_any_tracer()

    with pinned_frame(_caller_frame()):
        result = run_helper(helper_args, archive=helper_archive(), settings=settings)
    return result.locals


def load_agent(
    library_path: str,
    options: str | None = None,
    settings: InspectorSettings | None = None,
) -> None:
    """
    Load a native agent library into this process through the helper.

    :raises HelperNonZeroExit: If the helper could not load the library.
    """
    helper_args = ["load-agent", str(os.getpid()), os.path.abspath(library_path)]
    if options is not None:
        helper_args.append(options)
    allow_any_tracer()
    run_helper(helper_args, archive=helper_archive(), settings=settings)


def enable_channel(port: int | None = None, settings: InspectorSettings | None = None) -> int:
    """
    Make this process listen for debug clients and return the port.

    :raises HelperNonZeroExit: If no channel could be enabled.
    """
    helper_args = ["enable-channel", str(os.getpid())]
    if port is not None:
        helper_args.append(str(port))
    allow_any_tracer()
    result = run_helper(helper_args, archive=helper_archive(), settings=settings)
    for line in result.stdout_lines:
        if line.startswith(PORT_LINE_PREFIX):
            return int(line[len(PORT_LINE_PREFIX):])
    raise InspectorError("Helper succeeded without reporting a port", details={"stdout": result.stdout_lines})


def run_in_child(function: Callable[[], object]) -> int:
    """
    Call a module level function in a fresh interpreter and wait for it.

    The child shares this process's stdio. Returns the child's exit status.

    :raises UnresolvableRoutine: If the function cannot be imported by name.
    """
    module = getattr(function, "__module__", None)
    qualname = getattr(function, "__qualname__", "")
    if not module or module == "__main__" or "<" in qualname:
        raise UnresolvableRoutine(
            f"{function!r} cannot be imported in a child process",
            details={"module": module, "qualname": qualname},
        )

    script = f"import importlib, operator; operator.attrgetter({qualname!r})(importlib.import_module({module!r}))()"
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [os.getcwd(), *sys.path]))
    logger.info("Running %s.%s in a child interpreter", module, qualname)
    return subprocess.call([sys.executable, "-c", script], env=env)


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug("Helper archive %s is already gone", path)


def _caller_frame() -> types.FrameType:
    # Two levels up: the frame that called the public function.
    return sys._getframe(2)  # noqa: WPS437


def _start_reader(stream: IO[str], lines: list[str], label: str) -> threading.Thread:
    def drain() -> None:
        for line in stream:
            line = line.rstrip("\r\n")
            logger.debug("helper %s: %s", label, line)
            lines.append(line)
        stream.close()

    reader = threading.Thread(target=drain, name=f"frame_inspector-helper-{label}", daemon=True)
    reader.start()
    return reader


def _join_readers(readers: list[threading.Thread]) -> None:
    for reader in readers:
        reader.join(_READER_JOIN_TIMEOUT)
