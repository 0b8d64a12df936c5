"""Exceptions raised by frame_inspector.

Every failure the inspector can report is a subclass of :class:`InspectorError`
so callers can catch the whole family at once, while the concrete class tells
which step of the pipeline gave up.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from frame_inspector.orchestrator import HelperInvocationResult


class InspectorError(Exception):
    """Base exception for all frame_inspector errors."""

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    @property
    def error_code(self) -> str:
        """Name used for this error on the wire."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for protocol responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause!s})"
        return self.message


class ConfigurationError(InspectorError):
    """Raised when a setting cannot be parsed."""

    def __init__(self, message: str, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, **kwargs)
        self.config_key = config_key


class ResourceNotFound(InspectorError):
    """No source is reachable for a module."""


class RoutineNotFound(InspectorError):
    """No routine with the requested name and descriptor exists in a unit."""


class UnresolvableRoutine(InspectorError):
    """The handle has no stable binding to a routine of its declaring module."""


class AttachFailed(InspectorError):
    """The control connection to the target process could not be opened."""


class AgentLoadFailed(InspectorError):
    """The target rejected the agent library or its entry point."""


class AgentInitFailed(InspectorError):
    """The agent library loaded but its initialization reported failure."""

    def __init__(self, message: str, status: int, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["status"] = status
        super().__init__(message, details=details, **kwargs)
        self.status = status


class ProtocolConnectFailed(InspectorError):
    """The debug channel refused, timed out or spoke another protocol."""


class ThreadNotFound(InspectorError):
    """No live thread carries the requested name."""

    def __init__(self, thread_name: str, **kwargs: Any) -> None:
        super().__init__(f"Thread not found: {thread_name}", **kwargs)
        self.thread_name = thread_name


class IncompatibleThreadState(InspectorError):
    """The target could not suspend the thread."""


class DebugInfoUnavailable(InspectorError):
    """The frame has no readable variable names."""


class HelperTimeout(InspectorError):
    """The helper process did not finish in time and was killed."""

    def __init__(
        self,
        message: str,
        stdout_lines: list[str],
        stderr_lines: list[str],
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.stdout_lines = stdout_lines
        self.stderr_lines = stderr_lines

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)


class HelperNonZeroExit(InspectorError):
    """The helper process exited with a nonzero status."""

    def __init__(self, message: str, result: HelperInvocationResult, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["exit_code"] = result.exit_code
        super().__init__(message, details=details, **kwargs)
        self.result = result

    @property
    def exit_code(self) -> int:
        return self.result.exit_code

    @property
    def stderr(self) -> str:
        return "\n".join(self.result.stderr_lines)

