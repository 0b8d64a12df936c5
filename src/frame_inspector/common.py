"""
Shared constants for the helper program and the processes that launch it.

The helper talks to its parent through exit codes and delimited stdout blocks;
both sides import the values from here so they can never drift apart.
"""

from collections import namedtuple

CommandResult = namedtuple("CommandResult", ["success", "message"])

# Stdout protocol
LOCALS_START = "--- LOCALS START ---"
LOCALS_END = "--- LOCALS END ---"
PROPERTIES_START = "--- Agent Properties START ---"
PROPERTIES_END = "--- Agent Properties END ---"
PORT_LINE_PREFIX = "DEBUG_PORT="
NULL_VALUE = "null"
LOCAL_SEPARATOR = " = "

# Helper exit codes
EXIT_OK = 0
EXIT_USAGE = 1
EXIT_ENABLE_FAILED = 2
EXIT_GENERAL_ERROR = 10
EXIT_ENABLE_ONLY_FAILED = 11
EXIT_CONNECT_FAILED = 12
EXIT_CONNECT_OTHER_ERROR = 13

# Name of the startup option that makes a process listen from the start:
# ``python -X frame_inspector_agent=host:port`` or the environment variable.
AGENT_XOPTION = "frame_inspector_agent"
AGENT_ENV_VAR = "FRAME_INSPECTOR_AGENT"
# Pid of the process the startup address belongs to; children inherit the
# environment but not the listener.
AGENT_PID_ENV_VAR = "FRAME_INSPECTOR_AGENT_PID"

# DAP capability the agent advertises in its `initialize` response
CAPABILITY_MARKER = "supportsFrameInspector"
