"""
Compiled-unit loader.

A compiled unit is a module recompiled from its current source, so the result
reflects the file on disk even when the module object in ``sys.modules`` was
produced from an older revision. Units are built on demand for one call and
never cached.
"""

from __future__ import annotations

import ast
import dis
import importlib.abc
import importlib.machinery
import importlib.util
import logging
import sys
import types
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from frame_inspector.bytecode.descriptors import (
    ResolvedRoutine,
    RoutineDescriptor,
    descriptor_from_code,
    resolve,
    routine_name,
)
from frame_inspector.errors import InspectorError, ResourceNotFound

logger = logging.getLogger(__name__)

_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)


@dataclass(frozen=True)
class RoutineNode:
    """One routine of a compiled unit with its per-routine metadata."""

    name: str
    descriptor: RoutineDescriptor
    code: types.CodeType
    first_line: int
    lines: tuple[int, ...]
    stacksize: int
    jump_targets: tuple[int, ...] = ()
    # Annotation source text by parameter name, plus "return"
    annotations: dict[str, str] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class CompiledUnit:
    """Instruction-level view of one module."""

    name: str
    filename: str
    code: types.CodeType
    routines: tuple[RoutineNode, ...]

    def find(
        self,
        name: str,
        descriptor: RoutineDescriptor,
        first_line: int | None = None,
    ) -> RoutineNode | None:
        """
        Return the routine matching both name and descriptor.

        :param first_line: Preferred first line when several definitions
            match, as with a function defined in both branches of an ``if``.
        """
        matches = [
            routine
            for routine in self.routines
            if routine.name == name and routine.descriptor == descriptor
        ]
        for routine in matches:
            if routine.first_line == first_line:
                return routine
        return matches[0] if matches else None

    def match(self, resolved: ResolvedRoutine) -> RoutineNode | None:
        """
        Return the routine of this unit that a live routine was compiled from.

        The descriptor is recomputed with annotation text from the live
        routine's own definition in this unit's source, so aliases, type
        variables and renamed imports compare as written.
        """
        live_code = resolved.function.__code__
        descriptor = resolved.descriptor
        for routine in self.routines:
            own_definition = (
                routine.code.co_qualname == live_code.co_qualname
                and routine.first_line == live_code.co_firstlineno
            )
            if own_definition:
                descriptor = descriptor_from_code(live_code, routine.annotations)
                break
        return self.find(resolved.name, descriptor, live_code.co_firstlineno)


@dataclass(frozen=True)
class SourceFragment:
    path: str
    start_line: int
    end_line: int
    code: str


def load_unit(
    module_name: str,
    loader: importlib.abc.Loader | None = None,
    expand: bool = True,
) -> CompiledUnit:
    """
    Load and compile the source of a module.

    :param module_name: Fully qualified module name.
    :param loader: Loader that owns the module; defaults to the module's own
        spec loader, then to a ``sys.path`` search.
    :param expand: Also reconstruct jump targets and stack sizes.
    :raises ResourceNotFound: If no source can be reached.
    """
    source, filename = _fetch_source(module_name, loader)
    try:
        tree = ast.parse(source, filename=filename)
        module_code = compile(tree, filename, "exec", dont_inherit=True)
    except SyntaxError as err:
        raise ResourceNotFound(
            f"Source of {module_name} does not compile",
            details={"filename": filename},
            cause=err,
        ) from err

    nodes = _index_function_nodes(tree)
    routines = tuple(
        _build_routine(code, nodes, expand)
        for code in _iter_nested_code(module_code)
        if (code.co_qualname, code.co_firstlineno) in nodes
    )
    logger.debug("Loaded unit %s with %d routines", module_name, len(routines))
    return CompiledUnit(module_name, filename, module_code, routines)


def source_fragment_of(handle: object) -> SourceFragment | None:
    """
    Return the source lines covered by a routine.

    Uses the line table of the freshly compiled routine, so decorators are
    included and trailing comments are not. Returns None when the routine or
    its source cannot be located.
    """
    try:
        resolved = resolve(handle)
        unit = load_unit(resolved.module, expand=False)
    except InspectorError as err:
        logger.info("No source fragment for %r: %s", handle, err)
        return None

    routine = unit.match(resolved)
    if routine is None or not routine.lines:
        return None

    start_line = min(routine.first_line, *routine.lines)
    end_line = max(routine.lines)
    try:
        all_lines = Path(unit.filename).read_text(encoding="utf-8").splitlines()
    except OSError as err:
        logger.info("Cannot read %s: %s", unit.filename, err)
        return None
    if end_line > len(all_lines):
        return None
    code = "\n".join(all_lines[start_line - 1:end_line])
    return SourceFragment(unit.filename, start_line, end_line, code)


def _fetch_source(
    module_name: str,
    loader: importlib.abc.Loader | None,
) -> tuple[str, str]:
    """Resolve the source text and file name of a module."""
    spec = _find_spec(module_name)
    filename = (spec.origin if spec else None) or f"<{module_name}>"

    loaders = [loader, spec.loader if spec else None]
    for candidate in loaders:
        get_source = getattr(candidate, "get_source", None)
        if get_source is None:
            continue
        try:
            source = get_source(module_name)
        except ImportError as err:
            logger.debug("Loader %r has no source for %s: %s", candidate, module_name, err)
            continue
        if source is not None:
            return source, filename

    if spec and spec.origin and spec.origin.endswith(".py"):
        try:
            return Path(spec.origin).read_text(encoding="utf-8"), spec.origin
        except OSError as err:
            raise ResourceNotFound(
                f"Cannot read source of {module_name}",
                details={"origin": spec.origin},
                cause=err,
            ) from err

    raise ResourceNotFound(
        f"No source resource for {module_name}",
        details={"loader": repr(loader), "origin": filename},
    )


def _find_spec(module_name: str) -> importlib.machinery.ModuleSpec | None:
    """Module spec from the live module, else from a ``sys.path`` search."""
    module = sys.modules.get(module_name)
    spec = getattr(module, "__spec__", None)
    if spec is not None:
        return spec
    if module_name == "__main__":
        main_file = getattr(module, "__file__", None)
        if main_file:
            return importlib.util.spec_from_file_location("__main__", main_file)
        return None

    package, _, _ = module_name.rpartition(".")
    search_path = None
    if package:
        parent_spec = _find_spec(package)
        search_path = parent_spec.submodule_search_locations if parent_spec else None
        if search_path is None:
            return None
    return importlib.machinery.PathFinder.find_spec(module_name, search_path)


def _index_function_nodes(tree: ast.Module) -> dict[tuple[str, int], ast.AST]:
    """Map (qualified name, first line) to every function definition node."""
    index: dict[tuple[str, int], ast.AST] = {}

    def visit(node: ast.AST, prefix: str) -> None:
        for child in ast.iter_child_nodes(node):
            if isinstance(child, _FUNCTION_NODES):
                qualname = f"{prefix}{child.name}"
                first_line = min([child.lineno, *(dec.lineno for dec in child.decorator_list)])
                index[(qualname, first_line)] = child
                visit(child, f"{qualname}.<locals>.")
            elif isinstance(child, ast.ClassDef):
                visit(child, f"{prefix}{child.name}.")
            else:
                visit(child, prefix)

    visit(tree, "")
    return index


def _iter_nested_code(code: types.CodeType) -> Iterator[types.CodeType]:
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            yield const
            yield from _iter_nested_code(const)


def _node_annotations(node: ast.FunctionDef | ast.AsyncFunctionDef) -> dict[str, str]:
    arguments = node.args
    annotated = [*arguments.posonlyargs, *arguments.args, *arguments.kwonlyargs]
    annotated.extend(arg for arg in (arguments.vararg, arguments.kwarg) if arg is not None)

    annotations = {
        arg.arg: ast.unparse(arg.annotation)
        for arg in annotated
        if arg.annotation is not None
    }
    if node.returns is not None:
        annotations["return"] = ast.unparse(node.returns)
    return annotations


def _build_routine(
    code: types.CodeType,
    nodes: dict[tuple[str, int], ast.AST],
    expand: bool,
) -> RoutineNode:
    annotations = _node_annotations(nodes[(code.co_qualname, code.co_firstlineno)])
    lines = sorted({line for _, _, line in code.co_lines() if line is not None})
    jump_targets: tuple[int, ...] = ()
    if expand:
        jump_targets = tuple(
            instruction.offset
            for instruction in dis.get_instructions(code)
            if instruction.is_jump_target
        )
    return RoutineNode(
        name=routine_name(code.co_qualname),
        descriptor=descriptor_from_code(code, annotations),
        code=code,
        first_line=code.co_firstlineno,
        lines=tuple(lines),
        stacksize=code.co_stacksize,
        jump_targets=jump_targets,
        annotations=annotations,
    )
