"""Pytest configuration and fixtures for integration tests against real processes."""

import os
import shutil
import subprocess  # nosec B404 # noqa: S404
import sys
from collections.abc import Generator
from pathlib import Path

import pytest

from frame_inspector.bootstrap import find_free_port
from frame_inspector.config import InspectorSettings
from frame_inspector.gdb.attach import PACKAGE_ROOT

ARTIFACTS_DIR = Path(__file__).parent / "artifacts"
TARGET_PROGRAM = ARTIFACTS_DIR / "target_program.py"
READY_LINE = "READY"


def is_ptrace_scope_allowed() -> bool:
    """
    Return True if /proc/sys/kernel/yama/ptrace_scope is 0 or 1.

    The target program opts in to being traced by any process of the same
    user, which covers scope 1; higher scopes forbid attaching altogether.
    """
    ptrace_path = Path("/proc/sys/kernel/yama/ptrace_scope")
    if not ptrace_path.exists():
        return True

    with ptrace_path.open("r") as file:
        return file.read().strip() in {"0", "1"}


def find_gdb() -> str | None:
    return shutil.which("gdb")


@pytest.fixture
def integration_settings() -> InspectorSettings:
    """Settings with generous timeouts for slow machines."""
    return InspectorSettings(
        gdb_path=find_gdb() or "/usr/bin/gdb",
        settle_delay=0.5,
        connect_timeout=10.0,
        helper_timeout=60.0,
    )


def _start_target(extra_args: list[str]) -> subprocess.Popen:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [PACKAGE_ROOT, env.get("PYTHONPATH")]))
    proc = subprocess.Popen(  # nosec B603 # noqa: S603
        [sys.executable, *extra_args, str(TARGET_PROGRAM)],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
        env=env,
    )
    assert proc.stdout.readline().strip() == READY_LINE
    return proc


def _stop_target(proc: subprocess.Popen) -> None:
    proc.stdin.close()
    try:
        proc.wait(timeout=10)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
    proc.stdout.close()


@pytest.fixture
def running_target() -> Generator[subprocess.Popen, None, None]:
    """Run the target program without any debug channel."""
    proc = _start_target([])
    yield proc
    _stop_target(proc)


@pytest.fixture
def listening_target() -> Generator[tuple[subprocess.Popen, int], None, None]:
    """Run the target program with the agent listening from the start."""
    port = find_free_port()
    proc = _start_target(["-m", "frame_inspector.agent", "--address", str(port)])
    yield proc, port
    _stop_target(proc)
