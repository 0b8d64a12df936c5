"""
Run a Python program with the debug agent listening from the start.

    python -m frame_inspector.agent --address 5678 program.py [args...]

Without ``--address`` the address comes from ``-X frame_inspector_agent=...``
or the ``FRAME_INSPECTOR_AGENT`` environment variable. Once listening, the
bound address and this pid are written to ``FRAME_INSPECTOR_AGENT`` and
``FRAME_INSPECTOR_AGENT_PID``.
"""

import argparse
import logging
import os
import runpy
import sys

from frame_inspector.agent.listener import start_from_arguments
from frame_inspector.common import AGENT_ENV_VAR, AGENT_PID_ENV_VAR, AGENT_XOPTION


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="python -m frame_inspector.agent",
        description="Run a program with the frame_inspector debug agent",
    )
    parser.add_argument("--address", help="port or host:port to listen on")
    parser.add_argument("--suspend", action="store_true", help="wait for a client before running")
    parser.add_argument("program", help="path of the program to run")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)

    address = args.address or sys._xoptions.get(AGENT_XOPTION) or _environment_address()  # noqa: WPS437
    if not address or address is True:
        parser.error(f"no address given and neither -X {AGENT_XOPTION} nor {AGENT_ENV_VAR} is set")

    logging.basicConfig(level=os.environ.get("FRAME_INSPECTOR_LOG_LEVEL", "WARNING"))
    suspend = "y" if args.suspend else "n"
    listener = start_from_arguments(
        f"transport=dt_socket,server=y,suspend={suspend},address={address}",
    )
    os.environ[AGENT_ENV_VAR] = listener.address
    os.environ[AGENT_PID_ENV_VAR] = str(os.getpid())

    sys.argv = [args.program, *args.args]
    runpy.run_path(args.program, run_name="__main__")


def _environment_address() -> str | None:
    # An address recorded by another agent process is already taken.
    owner = os.environ.get(AGENT_PID_ENV_VAR)
    if owner is not None and owner != str(os.getpid()):
        return None
    return os.environ.get(AGENT_ENV_VAR)


if __name__ == "__main__":
    main()
