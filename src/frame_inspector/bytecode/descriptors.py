"""
Routine descriptors: the overload-safe identity of a Python routine.

A descriptor encodes the parameter kinds, names and annotations of a routine
together with its return annotation and its flavour (plain, async, generator).
It never includes the routine name, so two routines sharing a qualified name
in one module (rebound functions, ``singledispatch`` registrations named
``_``) still get distinct identities as long as their signatures differ.

The same descriptor is computed from two sides: from a live function object
and from a freshly compiled module plus its syntax tree. Both sides read
parameter names and kinds from the code object and only differ in where the
annotation text comes from.
"""

from __future__ import annotations

import functools
import gc
import inspect
import re
import sys
import types
from dataclasses import dataclass

from frame_inspector.errors import RoutineNotFound, UnresolvableRoutine

CONSTRUCTOR_NAME = "<init>"
UNANNOTATED = "?"

_DOTTED_PREFIX = re.compile(r"\b(?:[A-Za-z_]\w*\.)+(?=[A-Za-z_])")
_WHITESPACE = re.compile(r"\s+")
_BUILTIN_ROUTINE_TYPES = (
    types.BuiltinFunctionType,
    types.BuiltinMethodType,
    types.MethodWrapperType,
    types.WrapperDescriptorType,
    types.MethodDescriptorType,
    types.ClassMethodDescriptorType,
)


@dataclass(frozen=True)
class RoutineDescriptor:
    """Canonical signature of a routine, independent of its name."""

    params: tuple[str, ...]
    returns: str
    flavour: str = ""

    @property
    def signature(self) -> str:
        return f"({', '.join(self.params)})->{self.returns}"

    def __str__(self) -> str:
        prefix = f"{self.flavour} " if self.flavour else ""
        return prefix + self.signature


@dataclass(frozen=True)
class RegularRoutine:
    function: types.FunctionType


@dataclass(frozen=True)
class Constructor:
    function: types.FunctionType
    owner: type | None = None


@dataclass(frozen=True)
class Unsupported:
    reason: str


RoutineKind = RegularRoutine | Constructor | Unsupported


@dataclass(frozen=True)
class ResolvedRoutine:
    """A routine handle bound to its declaring module and descriptor."""

    module: str
    name: str
    descriptor: RoutineDescriptor
    kind: RegularRoutine | Constructor

    @property
    def function(self) -> types.FunctionType:
        return self.kind.function


def normalize_annotation(annotation: object) -> str:
    """
    Render an annotation as canonical text.

    Strings are taken verbatim (quotes stripped), classes by qualified name,
    anything else by ``repr``. Whitespace and dotted module prefixes are
    dropped so ``typing.List[int]``, ``List[int]`` and ``List[ int ]`` agree.
    """
    if annotation is inspect.Parameter.empty:
        return UNANNOTATED
    if annotation is None:
        return "None"
    if isinstance(annotation, str):
        text = annotation.strip()
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
            text = text[1:-1]
    elif isinstance(annotation, type):
        text = annotation.__qualname__
    else:
        text = repr(annotation)
    text = _WHITESPACE.sub("", text)
    return _DOTTED_PREFIX.sub("", text)


def routine_flavour(code: types.CodeType) -> str:
    """Return ``async``, ``generator``, ``async generator`` or an empty string."""
    flags = code.co_flags
    if flags & inspect.CO_ASYNC_GENERATOR:
        return "async generator"
    if flags & inspect.CO_COROUTINE:
        return "async"
    if flags & inspect.CO_GENERATOR:
        return "generator"
    return ""


def descriptor_from_code(
    code: types.CodeType,
    annotations: dict[str, object],
) -> RoutineDescriptor:
    """
    Build a descriptor from a code object and a mapping of annotations.

    :param code: Code object of the routine; provides names and kinds.
    :param annotations: Parameter name (or ``return``) to annotation.
    :return: The canonical descriptor.
    """
    names = code.co_varnames
    posonly = code.co_posonlyargcount
    positional = code.co_argcount
    kwonly = code.co_kwonlyargcount
    index = positional + kwonly

    def render(name: str, prefix: str = "") -> str:
        annotation = annotations.get(name, inspect.Parameter.empty)
        return f"{prefix}{name}:{normalize_annotation(annotation)}"

    params = [render(name) for name in names[:positional]]
    if posonly:
        params.insert(posonly, "/")

    if code.co_flags & inspect.CO_VARARGS:
        params.append(render(names[index], "*"))
        index += 1
    elif kwonly:
        params.append("*")
    params.extend(render(name) for name in names[positional:positional + kwonly])

    if code.co_flags & inspect.CO_VARKEYWORDS:
        params.append(render(names[index], "**"))

    returns = normalize_annotation(annotations.get("return", inspect.Parameter.empty))
    return RoutineDescriptor(tuple(params), returns, routine_flavour(code))


def routine_name(qualname: str) -> str:
    """Qualified name inside the module, with constructors renamed to the sentinel."""
    head, _, last = qualname.rpartition(".")
    if last == "__init__":
        last = CONSTRUCTOR_NAME
    return f"{head}.{last}" if head else last


def classify(handle: object) -> RoutineKind:
    """
    Sort a routine handle into regular routine, constructor or unsupported.

    Bound methods, ``classmethod`` and ``staticmethod`` objects are unwrapped;
    a class stands for its ``__init__``.
    """
    if isinstance(handle, functools.partial):
        return Unsupported("functools.partial objects have no declaring routine")
    if isinstance(handle, property):
        return Unsupported("properties are not routines, pass fget or fset instead")
    if isinstance(handle, (classmethod, staticmethod)):
        handle = handle.__func__
    if inspect.ismethod(handle):
        handle = handle.__func__

    owner = None
    if isinstance(handle, type):
        owner = handle
        handle = handle.__init__
        if not isinstance(inspect.unwrap(handle), types.FunctionType):
            return Unsupported(f"{owner.__qualname__} has no Python constructor")

    if isinstance(handle, _BUILTIN_ROUTINE_TYPES):
        if getattr(handle, "__name__", "") == "__call__":
            return Unsupported(
                "invocation of an invocation: the handle reflects a __call__ "
                + "dispatch, not the routine behind it",
            )
        return Unsupported(f"builtin routine {getattr(handle, '__qualname__', handle)!r}")

    function = inspect.unwrap(handle) if callable(handle) else handle
    if not isinstance(function, types.FunctionType):
        return Unsupported(f"{type(handle).__name__} objects are not routines")
    if function.__name__ == "<lambda>":
        return Unsupported("lambdas have no stable binding in their module")
    if "<locals>" in function.__qualname__:
        return Unsupported(f"local function {function.__qualname__} has no stable binding")
    if function.__name__ == "__init__":
        return Constructor(function, owner)
    return RegularRoutine(function)


def live_annotations(function: types.FunctionType) -> dict[str, object]:
    """Annotations of a function without evaluating postponed ones."""
    if sys.version_info >= (3, 14):
        import annotationlib  # noqa: WPS433

        return annotationlib.get_annotations(function, format=annotationlib.Format.STRING)
    return inspect.get_annotations(function)


def descriptor_of(handle: object) -> RoutineDescriptor:
    """Compute the descriptor of a live routine handle."""
    return resolve(handle).descriptor


def resolve(handle: object) -> ResolvedRoutine:
    """
    Bind a handle to its module, routine name and descriptor.

    :raises UnresolvableRoutine: For lambdas, local functions, builtins and
        other handles that do not denote a routine of a module.
    """
    kind = classify(handle)
    if isinstance(kind, Unsupported):
        raise UnresolvableRoutine(kind.reason, details={"handle": repr(handle)})

    function = kind.function
    descriptor = descriptor_from_code(function.__code__, live_annotations(function))
    return ResolvedRoutine(
        module=function.__module__,
        name=routine_name(function.__qualname__),
        descriptor=descriptor,
        kind=kind,
    )


def caller_routine(depth: int = 0) -> types.FunctionType:
    """
    Return the function object whose frame called this one.

    :param depth: Number of additional frames to skip.
    :raises RoutineNotFound: When no function object owns the frame's code,
        e.g. for module level code or an exec'd snippet.
    """
    frame = sys._getframe(depth + 1)  # noqa: WPS437
    code = frame.f_code
    for referrer in gc.get_referrers(code):
        if isinstance(referrer, types.FunctionType) and referrer.__code__ is code:
            return referrer
    raise RoutineNotFound(
        f"No function object owns the code of {code.co_qualname}",
        details={"filename": code.co_filename, "line": frame.f_lineno},
    )


def closure_vars_of(handle: object) -> dict[str, object]:
    """
    Return the variables a routine captured from its enclosing scopes.

    Bound methods additionally report their receiver as ``self``. Cells that
    were never assigned are left out.
    """
    captured: dict[str, object] = {}
    if inspect.ismethod(handle):
        captured["self"] = handle.__self__
        handle = handle.__func__
    if isinstance(handle, functools.partial):
        captured.update(handle.keywords)
        handle = handle.func

    code = getattr(handle, "__code__", None)
    closure = getattr(handle, "__closure__", None)
    if code is None or not closure:
        return captured

    for name, cell in zip(code.co_freevars, closure):
        try:
            captured[name] = cell.cell_contents
        except ValueError:
            continue
    return captured
