"""
Request handler of the in-process debug agent.

Serves the subset of the Debug Adapter Protocol needed to inspect one frame:
``initialize``, ``threads``, ``pause``, ``stackTrace``, ``scopes``,
``variables``, ``continue`` and ``disconnect``. Frames are only reachable
while their thread is suspended; resuming a thread invalidates its frame ids.
"""

from __future__ import annotations

import itertools
import logging
import threading
import types
from collections.abc import Iterator
from functools import wraps

from frame_inspector.agent.suspender import ThreadSuspender
from frame_inspector.agent.values import describe, render_value
from frame_inspector.common import CAPABILITY_MARKER
from frame_inspector.dap.dap_message import DAPEvent, DAPResponse
from frame_inspector.errors import DebugInfoUnavailable, IncompatibleThreadState

logger = logging.getLogger(__name__)

ARGUMENTS = "arguments"
THREAD_ID = "threadId"
VAR_REF_LOCAL_BASE = 100000


def register_command(name: str):
    """
    Register a method as a DAP command.

    :param name: The name of the command to register.
    :return: The decorated function with the `_dap_command` attribute.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            return func(*args, **kwargs)

        wrapper._dap_command = name  # noqa: WPS437
        return wrapper

    return decorator


def frame_variables(frame: types.FrameType) -> list[tuple[str, object]]:
    """
    Visible variables of a frame, in definition order.

    Module level frames expose their globals, so dunder names are left out.

    :raises DebugInfoUnavailable: If the frame's locals cannot be read.
    """
    try:
        items = list(frame.f_locals.items())
    except (RuntimeError, SystemError) as err:
        raise DebugInfoUnavailable(
            f"Locals of {frame.f_code.co_qualname} are unavailable",
            cause=err,
        ) from err
    if frame.f_code.co_name == "<module>":
        items = [(name, value) for name, value in items if not name.startswith("__")]
    return items


class AgentRequestHandler:
    """Client request handler of the agent."""

    def __init__(self, suspender: ThreadSuspender):
        """
        Initialize the handler.

        :param suspender: Suspends and resumes threads of this process.
        """
        self.suspender = suspender
        self.connected = threading.Event()
        self._frame_ids = itertools.count(1)
        self._frames: dict[int, tuple[int, types.FrameType]] = {}
        self._commands = {}

        for attr_name in dir(self):
            attr = getattr(self, attr_name)
            if callable(attr) and hasattr(attr, "_dap_command"):
                self._commands[attr._dap_command] = attr  # noqa: WPS437

    def handle_request(self, request: dict) -> Iterator[dict]:
        """
        Process a client request and yield the response and any events.

        :param request: JSON request from client.
        """
        command = request.get("command")
        logger.debug("Handling DAP command: %s", request)

        handler = self._commands.get(command, self._unsupported_command)
        yield from handler(request)

    def release_all(self) -> None:
        """Resume every thread suspended through this handler."""
        self._frames.clear()
        self.suspender.resume_all()

    @register_command("initialize")
    def _initialize(self, request: dict) -> Iterator[dict]:
        """Process the command `initialize`."""
        self.connected.set()
        response = DAPResponse(
            request=request,
            command="initialize",
            body={
                CAPABILITY_MARKER: True,
                "supportsConfigurationDoneRequest": False,
                "supportsTerminateThreadsRequest": False,
            },
        )
        yield response.to_dict()
        yield DAPEvent("initialized").to_dict()

    @register_command("threads")
    def _threads(self, request: dict) -> Iterator[dict]:
        """Process the command `threads`."""
        threads = [
            {"id": thread.ident, "name": thread.name}
            for thread in threading.enumerate()
            if thread.ident is not None
        ]
        yield DAPResponse(request=request, command="threads", body={"threads": threads}).to_dict()

    @register_command("pause")
    def _pause(self, request: dict) -> Iterator[dict]:
        """Process the command `pause`."""
        response = DAPResponse(request=request, command="pause")
        thread_id = self._get_argument(request, THREAD_ID)
        if thread_id is None:
            yield response.fail("InvalidRequest", "'threadId' is required for pause").to_dict()
            return

        try:
            suspension = self.suspender.suspend(thread_id)
        except IncompatibleThreadState as err:
            yield response.fail_with(err).to_dict()
            return

        yield response.to_dict()
        yield DAPEvent(
            "stopped",
            body={
                "reason": "pause",
                "threadId": thread_id,
                "allThreadsStopped": False,
                "description": "native code" if suspension.in_native_code else "line",
            },
        ).to_dict()

    @register_command("stackTrace")
    def _stack_trace(self, request: dict) -> Iterator[dict]:
        """Process the command `stackTrace`."""
        response = DAPResponse(request=request, command="stackTrace")
        thread_id = self._get_argument(request, THREAD_ID)
        suspension = self.suspender.get(thread_id) if thread_id is not None else None
        if suspension is None:
            message = f"Thread {thread_id} is not suspended"
            yield response.fail("IncompatibleThreadState", message).to_dict()
            return

        start_frame = self._get_argument(request, "startFrame", 0)
        levels = self._get_argument(request, "levels", 0)
        frames = []
        frame = suspension.frame
        while frame is not None:
            frames.append(frame)
            frame = frame.f_back

        selected = frames[start_frame:]
        if levels:
            selected = selected[:levels]
        response.body = {
            "stackFrames": [self._describe_frame(thread_id, frame) for frame in selected],
            "totalFrames": len(frames),
        }
        yield response.to_dict()

    @register_command("scopes")
    def _scopes(self, request: dict) -> Iterator[dict]:
        """Process the command `scopes`."""
        response = DAPResponse(request=request, command="scopes")
        frame_id = self._get_argument(request, "frameId")
        if frame_id not in self._frames:
            message = f"Unknown or expired frame id: {frame_id}"
            yield response.fail("InvalidRequest", message).to_dict()
            return

        response.body = {
            "scopes": [
                {
                    "name": "Locals",
                    "presentationHint": "locals",
                    "variablesReference": VAR_REF_LOCAL_BASE + frame_id,
                    "expensive": False,
                },
            ],
        }
        yield response.to_dict()

    @register_command("variables")
    def _variables(self, request: dict) -> Iterator[dict]:
        """Process the `variables` request."""
        response = DAPResponse(request=request, command="variables")
        reference = self._get_argument(request, "variablesReference")
        entry = self._frames.get((reference or 0) - VAR_REF_LOCAL_BASE)
        if entry is None:
            message = f"Unknown or expired variables reference: {reference}"
            yield response.fail("InvalidRequest", message).to_dict()
            return

        try:
            items = frame_variables(entry[1])
        except DebugInfoUnavailable as err:
            yield response.fail_with(err).to_dict()
            return

        variables = []
        for name, value in items:
            info = describe(value)
            rendered = render_value(info)
            variables.append(
                {
                    "name": name,
                    "value": "null" if rendered is None else rendered,
                    "type": info.get("type", info["kind"]),
                    "variablesReference": 0,
                    "valueInfo": info,
                },
            )
        response.body = {"variables": variables}
        yield response.to_dict()

    @register_command("continue")
    def _continue(self, request: dict) -> Iterator[dict]:
        """Process the command `continue`."""
        response = DAPResponse(request=request, command="continue")
        thread_id = self._get_argument(request, THREAD_ID)
        self._forget_frames(thread_id)
        if not self.suspender.resume(thread_id):
            message = f"Thread {thread_id} is not suspended"
            yield response.fail("IncompatibleThreadState", message).to_dict()
            return

        response.body = {"allThreadsContinued": False}
        yield response.to_dict()
        yield DAPEvent(
            "continued",
            body={"threadId": thread_id, "allThreadsContinued": False},
        ).to_dict()

    @register_command("disconnect")
    def _disconnect(self, request: dict) -> Iterator[dict]:
        """Process the command `disconnect`."""
        self.release_all()
        yield DAPResponse(request=request, command="disconnect").to_dict()

    def _describe_frame(self, thread_id: int, frame: types.FrameType) -> dict:
        frame_id = next(self._frame_ids)
        self._frames[frame_id] = (thread_id, frame)
        code = frame.f_code
        return {
            "id": frame_id,
            "name": code.co_qualname,
            "line": frame.f_lineno or 0,
            "column": 0,
            "source": {"path": code.co_filename},
        }

    def _forget_frames(self, thread_id: int | None) -> None:
        expired = [
            frame_id
            for frame_id, (owner, _) in self._frames.items()
            if owner == thread_id
        ]
        for frame_id in expired:
            del self._frames[frame_id]

    def _unsupported_command(self, request: dict) -> Iterator[dict]:
        """Generate a response to an unsupported command."""
        command = request.get("command", "unknown")
        response = DAPResponse(request=request, command=command)
        yield response.fail("UnsupportedCommand", f"Unsupported command: {command}").to_dict()

    def _get_argument(self, request: dict, key: str, default=None):
        """
        Retrieve the argument from request[ARGUMENTS].

        :param request: DAP input request.
        :param key: The key of the argument.
        :param default: Default value if the key is missing.
        :return: Argument value or default.
        """
        return request.get(ARGUMENTS, {}).get(key, default)
