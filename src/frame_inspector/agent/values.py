"""
Value descriptions exchanged between the agent and the protocol client.

The agent never ships the value itself: :func:`describe` reduces it to a small
JSON-safe ``valueInfo`` mapping, and :func:`render_value` turns that mapping
into the one-line text shown to users. The rendering is lossy on purpose.
"""

from __future__ import annotations

import collections
from typing import Any

MAX_STRING_LENGTH = 100
TRUNCATION_MARKER = "..."

_PRIMITIVES = (bool, int, float, complex)
_SIZED_BUILTINS = (
    list,
    tuple,
    dict,
    set,
    frozenset,
    bytes,
    bytearray,
    range,
    collections.deque,
    collections.OrderedDict,
    collections.defaultdict,
    collections.Counter,
)
_ESCAPES = (
    ("\\", "\\\\"),
    ('"', '\\"'),
    ("\n", "\\n"),
    ("\t", "\\t"),
    ("\r", "\\r"),
)


def describe(value: object) -> dict[str, Any]:
    """Build the ``valueInfo`` mapping of a value."""
    if value is None:
        return {"kind": "null"}
    if type(value) in _PRIMITIVES:
        return {"kind": "primitive", "text": repr(value)}
    if isinstance(value, str):
        return {
            "kind": "string",
            "text": value[:MAX_STRING_LENGTH + 1],
            "length": len(value),
        }

    info: dict[str, Any] = {
        "kind": "object",
        "type": type_name(value),
        "id": id(value),
    }
    # len() of arbitrary objects may run user code inside a suspended thread
    if type(value) in _SIZED_BUILTINS:
        info["length"] = len(value)
    return info


def type_name(value: object) -> str:
    cls = type(value)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def render_value(info: dict[str, Any] | None) -> str | None:
    """
    Render a ``valueInfo`` mapping as text.

    :return: None for an absent value, otherwise the rendered text.
    """
    if info is None or info.get("kind") == "null":
        return None

    kind = info.get("kind")
    if kind == "primitive":
        return str(info.get("text", ""))
    if kind == "string":
        return render_string(str(info.get("text", "")), info.get("length"))

    rendered = str(info.get("type", "object"))
    if "length" in info:
        rendered += f"[length={info['length']}]"
    return f"{rendered}@{int(info.get('id', 0)):x}"


def render_string(text: str, length: int | None = None) -> str:
    """Quote a string, truncating it beyond the maximum length and escaping it."""
    full_length = len(text) if length is None else length
    if full_length > MAX_STRING_LENGTH:
        text = text[:MAX_STRING_LENGTH - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return f'"{text}"'
