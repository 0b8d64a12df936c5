"""Unit tests for module and routine disassembly."""

import dataclasses
import sys

import pytest

from frame_inspector.bytecode import disassembler
from frame_inspector.bytecode.disassembler import bytecode_of, disassemble_routine, disassemble_unit
from frame_inspector.bytecode.loader import load_unit
from frame_inspector.errors import RoutineNotFound, UnresolvableRoutine
from tests.small import sample_routines as sample


def test_disassemble_unit_wraps_module_block():
    """Should render every routine inside one module block."""
    text = disassemble_unit(load_unit(sample.__name__))
    assert text.startswith(f"module {sample.__name__} {{\n")
    assert text.endswith("}\n")
    assert "    def scale(x:int)->int" in text
    assert "    def scale(x:float)->float" in text


def test_disassemble_routine_picks_int_overload():
    """Should render only the rebound function matching the handle."""
    text = disassemble_routine(sample.int_scale)
    assert text.startswith("def scale(x:int)->int\n")
    assert "1111" in text
    assert "2.5" not in text
    assert "module" not in text


def test_disassemble_routine_picks_float_overload():
    """Should render the later binding of a rebound name on its own."""
    text = disassemble_routine(sample.float_scale)
    assert "2.5" in text
    assert "1111" not in text


def test_disassemble_routine_singledispatch_registrations():
    """Should tell apart registrations sharing the name `_`."""
    int_text = disassemble_routine(sample.process.registry[int])
    str_text = disassemble_routine(sample.process.registry[str])
    assert "int-branch" in int_text
    assert "str-branch" not in int_text
    assert "str-branch" in str_text


def test_disassemble_routine_property_setter():
    """Should render the setter, not the getter, of a property."""
    text = disassemble_routine(sample.Temperature.celsius.fset)
    assert text.startswith("def Temperature.celsius(self:?, value:float)->None")
    assert "STORE_ATTR" in text


def test_disassemble_constructor_calling_super():
    """Should render a constructor that delegates through super()."""
    text = disassemble_routine(sample.Derived)
    assert text.startswith("def Derived.<init>(self:?, x:int, extra:str)->None")
    assert "extra" in text


def test_disassemble_constructor_calling_sibling():
    """Should render a constructor that calls another class's constructor."""
    text = disassemble_routine(sample.Explicit)
    assert text.startswith("def Explicit.<init>(self:?, x:int)->None")
    assert "7" in text


def test_disassemble_routine_output_is_dedented():
    """Should strip the module indentation and leading blank lines."""
    text = disassemble_routine(sample.fetch)
    assert text.splitlines()[0] == "async def fetch(x:int)->int"
    assert text.splitlines()[1].startswith("    # lines ")


def test_disassemble_routine_unsupported_handle():
    """Should refuse lambdas before loading anything."""
    with pytest.raises(UnresolvableRoutine):
        disassemble_routine(sample.square)


def test_disassemble_routine_missing_routine(monkeypatch):
    """Should raise RoutineNotFound when no routine matches name and descriptor."""
    empty_unit = dataclasses.replace(load_unit(sample.__name__), routines=())
    monkeypatch.setattr(disassembler, "load_unit", lambda name: empty_unit)
    with pytest.raises(RoutineNotFound):
        disassemble_routine(sample.int_scale)


def test_bytecode_of_class():
    """Should render every routine of a class and nothing else."""
    text = bytecode_of(sample.Temperature)
    assert text.startswith(f"module {sample.__name__}.Temperature {{")
    assert "def Temperature.<init>" in text
    assert "def Temperature.describe" in text
    assert "def scale" not in text


def test_bytecode_of_module_and_routine():
    """Should dispatch modules to the unit and routines to a single routine."""
    assert bytecode_of(sample).startswith(f"module {sample.__name__} {{")
    assert bytecode_of(sample.int_scale).startswith("def scale(x:int)->int")


def test_disassemble_routine_with_type_variable():
    """Should match annotations that use a TypeVar as written in the source."""
    text = disassemble_routine(sample.first)
    assert text.startswith("def first(items:list[T])->T\n")


def test_disassemble_routine_with_type_alias():
    """Should match annotations that use a module level alias."""
    text = disassemble_routine(sample.total)
    assert text.startswith("def total(values:IntList)->int\n")
    assert "5150" in text


def test_disassemble_routine_with_renamed_import():
    """Should match annotations naming a class imported under another name."""
    assert disassemble_routine(sample.ordered_keys).startswith("def ordered_keys(mapping:Ordered)->list[str]\n")


def test_disassemble_routine_prefers_live_definition():
    """Should pick the definition the live function was compiled from."""
    live, dead = ("windows-branch", "posix-branch") if sys.platform == "win32" else ("posix-branch", "windows-branch")
    text = disassemble_routine(sample.platform_name)
    assert live in text
    assert dead not in text


def test_find_prefers_first_line():
    """Should choose among equal name and descriptor matches by first line."""
    unit = load_unit(sample.__name__)
    candidates = [routine for routine in unit.routines if routine.name == "platform_name"]
    assert len(candidates) == 2
    later = max(candidates, key=lambda routine: routine.first_line)
    assert unit.find("platform_name", later.descriptor, later.first_line) is later
    assert unit.find("platform_name", later.descriptor) is min(candidates, key=lambda routine: routine.first_line)
