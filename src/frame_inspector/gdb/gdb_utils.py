"""Utility functions for GDB response handling and expression quoting."""

import re

from frame_inspector.common import CommandResult

_QUOTED_STRING = re.compile(r'"((?:[^"\\]|\\.)*)"')


def is_gdb_responses_successful_with_message(responses: list[dict]) -> CommandResult:
    """
    Parse GDB responses for errors.

    :param responses: List of responses from GDB.
    :return: Tuple (success, error_message).
    """
    for resp in responses:
        if resp.get("type") == "result" and resp.get("message") == "error":
            success = False
            error_message = resp["payload"].get("msg", "Unknown error")
            return CommandResult(success, f"Error from GDB: {error_message}")
    success = True
    return CommandResult(success, "")


def find_result_payload(responses: list[dict]) -> dict:
    """Return the payload of the `done` result record, or an empty dict."""
    for resp in responses:
        if resp.get("type") == "result" and resp.get("message") == "done":
            return resp.get("payload") or {}
    return {}


def c_string_literal(text: str) -> str:
    """Quote text as a C string literal usable inside a GDB expression."""
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n").replace("\t", "\\t")
    return f'"{escaped}"'


def quote_mi_argument(argument: str) -> str:
    """
    Quote an argument for a GDB/MI command line.

    MI arguments containing spaces or quotes must be wrapped in a C-style
    string, so the text gets one more level of escaping.
    """
    escaped = argument.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_pointer(value: str) -> int:
    """
    Convert a GDB value such as ``(void *) 0x7f12`` or ``0x0`` to an integer.

    :raises ValueError: If no number is found.
    """
    match = re.search(r"(0x[0-9a-fA-F]+|-?\d+)\s*(?:<[^>]*>)?\s*$", value.strip())
    if not match:
        raise ValueError(f"Not a numeric GDB value: {value!r}")
    return int(match.group(1), 0)


def parse_c_string(value: str) -> str:
    """Extract the text of a ``char *`` value printed by GDB, e.g. ``0x55 "msg"``."""
    match = _QUOTED_STRING.search(value)
    if not match:
        return ""
    return bytes(match.group(1), "utf-8").decode("unicode_escape")
