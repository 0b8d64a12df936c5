"""Runtime settings for frame_inspector.

Every knob has a default suited to inspecting a local process and can be
overridden through ``FRAME_INSPECTOR_*`` environment variables, which is also
how the settings reach the helper process.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, fields

from frame_inspector.errors import ConfigurationError

ENV_PREFIX = "FRAME_INSPECTOR_"
DEFAULT_GDB_PATH = "/usr/bin/gdb"


@dataclass(frozen=True)
class InspectorSettings:
    """Timeouts and paths used across the attach and inspection pipeline."""

    gdb_path: str = DEFAULT_GDB_PATH
    gdb_timeout: float = 20.0
    agent_load_timeout: float = 20.0
    settle_delay: float = 0.5
    command_timeout: float = 5.0
    connect_timeout: float = 10.0
    helper_timeout: float = 30.0
    suspend_arrival_timeout: float = 0.2
    host: str = "127.0.0.1"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> InspectorSettings:
        """Build settings from ``FRAME_INSPECTOR_*`` variables."""
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for field in fields(cls):
            key = ENV_PREFIX + field.name.upper()
            raw = environ.get(key)
            if raw is None or raw == "":
                continue
            if field.type == "float":
                values[field.name] = _parse_positive_float(key, raw)
            else:
                values[field.name] = raw
        if "gdb_path" not in values:
            values["gdb_path"] = shutil.which("gdb") or DEFAULT_GDB_PATH
        return cls(**values)

    def to_env(self) -> dict[str, str]:
        """Render settings as environment variables for a child process."""
        return {
            ENV_PREFIX + field.name.upper(): str(getattr(self, field.name))
            for field in fields(self)
        }


def _parse_positive_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as err:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", config_key=key) from err
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {raw!r}", config_key=key)
    return value
