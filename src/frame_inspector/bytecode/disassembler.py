"""Text rendering of compiled units and single routines."""

from __future__ import annotations

import dataclasses
import dis
import inspect
import textwrap
import types

from frame_inspector.bytecode.descriptors import resolve
from frame_inspector.bytecode.loader import CompiledUnit, RoutineNode, load_unit
from frame_inspector.errors import RoutineNotFound

INDENT = "    "


def disassemble_unit(unit: CompiledUnit) -> str:
    """Render every routine of a unit inside a ``module <name> { ... }`` block."""
    blocks = [_render_routine(routine) for routine in unit.routines]
    body = "\n\n".join(textwrap.indent(block, INDENT) for block in blocks)
    return f"module {unit.name} {{\n{body}\n}}\n"


def disassemble_routine(handle: object) -> str:
    """
    Render the instructions of exactly one routine.

    The declaring module is recompiled and searched for a routine with the
    same name and descriptor, so overloads and rebound functions sharing a
    name never leak into the result.

    :raises UnresolvableRoutine: If the handle is a lambda, local function,
        builtin or other unsupported shape.
    :raises ResourceNotFound: If the module source cannot be loaded.
    :raises RoutineNotFound: If no routine matches name and descriptor.
    """
    resolved = resolve(handle)
    unit = load_unit(resolved.module)
    routine = unit.match(resolved)
    if routine is None:
        raise RoutineNotFound(
            f"No routine {resolved.name} {resolved.descriptor} in {unit.name}",
            details={
                "candidates": [
                    f"{candidate.name} {candidate.descriptor}"
                    for candidate in unit.routines
                    if candidate.name == resolved.name
                ],
            },
        )

    single = dataclasses.replace(unit, routines=(routine,))
    text = disassemble_unit(single)
    body = text[text.index("{") + 1:text.rindex("}")]
    return textwrap.dedent(body).lstrip("\n")


def bytecode_of(target: object) -> str:
    """Disassemble a module, every routine of a class, or a single routine."""
    if isinstance(target, types.ModuleType):
        return disassemble_unit(load_unit(target.__name__))
    if inspect.isclass(target):
        unit = load_unit(target.__module__)
        prefix = f"{target.__qualname__}."
        members = tuple(routine for routine in unit.routines if routine.name.startswith(prefix))
        return disassemble_unit(
            dataclasses.replace(unit, name=f"{unit.name}.{target.__qualname__}", routines=members),
        )
    return disassemble_routine(target)


def _render_routine(routine: RoutineNode) -> str:
    descriptor = routine.descriptor
    prefix = f"{descriptor.flavour} " if descriptor.flavour else ""
    header = f"{prefix}def {routine.name}{descriptor.signature}"
    line_span = f"{routine.lines[0]}-{routine.lines[-1]}" if routine.lines else "none"
    metadata = f"# lines {line_span}, stack size {routine.stacksize}"
    if routine.jump_targets:
        metadata += ", jump targets " + " ".join(str(offset) for offset in routine.jump_targets)
    listing = dis.Bytecode(routine.code).dis().rstrip("\n")
    return f"{header}\n{INDENT}{metadata}\n{textwrap.indent(listing, INDENT)}"
