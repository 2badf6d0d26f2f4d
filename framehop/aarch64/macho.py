"""Unwind rules for Aarch64 from compact unwind info (__unwind_info) opcodes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from framehop.aarch64.instruction_analysis import rule_from_instruction_analysis
from framehop.aarch64.unwind_rule import NoOp, OffsetSp, UnwindRuleAarch64, UseFramePointer

__all__ = [
    "CompactUnwindInfoError",
    "FunctionHasNoInfo",
    "CallerCannotBeFrameless",
    "BadOpcodeKind",
    "ExecRule",
    "NeedDwarf",
    "CuiUnwindResult",
    "OpcodeNull",
    "OpcodeFrameless",
    "OpcodeDwarf",
    "OpcodeFrameBased",
    "OpcodeUnrecognized",
    "OpcodeArm64",
    "unwind_frame",
    "rule_for_stub_helper",
]


class CompactUnwindInfoError(Exception):
    """Compact unwind info could not be used to unwind a frame."""


class FunctionHasNoInfo(CompactUnwindInfoError):
    """The function has a null opcode and no unwind information."""

    def __init__(self) -> None:
        super().__init__("the function has no compact unwind info")


class CallerCannotBeFrameless(CompactUnwindInfoError):
    """A frameless opcode was found for a frame other than the first."""

    def __init__(self) -> None:
        super().__init__("a caller frame cannot be frameless")


class BadOpcodeKind(CompactUnwindInfoError):
    """The opcode has a kind that is not recognized."""

    def __init__(self, kind: int) -> None:
        super().__init__(f"unrecognized compact unwind opcode kind {kind}")
        self.kind = kind


@dataclass(frozen=True)
class ExecRule:
    """Unwind by executing ``rule``."""

    rule: UnwindRuleAarch64


@dataclass(frozen=True)
class NeedDwarf:
    """Unwind with the DWARF FDE at offset ``eh_frame_fde`` in __eh_frame."""

    eh_frame_fde: int


CuiUnwindResult = Union[ExecRule, NeedDwarf]


@dataclass(frozen=True)
class OpcodeNull:
    """No unwind information for the function."""


@dataclass(frozen=True)
class OpcodeFrameless:
    """A function that does not set up a frame; sp moved by ``stack_size_in_bytes``."""

    stack_size_in_bytes: int


@dataclass(frozen=True)
class OpcodeDwarf:
    """Unwind information lives in the DWARF FDE at ``eh_frame_fde``."""

    eh_frame_fde: int


@dataclass(frozen=True)
class OpcodeFrameBased:
    """A function that uses the frame pointer; saved registers are irrelevant here."""


@dataclass(frozen=True)
class OpcodeUnrecognized:
    """An opcode of unknown ``kind``."""

    kind: int


OpcodeArm64 = Union[
    OpcodeNull, OpcodeFrameless, OpcodeDwarf, OpcodeFrameBased, OpcodeUnrecognized
]


def unwind_frame(
    opcode: OpcodeArm64,
    is_first_frame: bool,
    address_offset_within_function: int,
    function_bytes: bytes | None,
) -> CuiUnwindResult:
    """Decide how to unwind a frame whose function has the given opcode.

    For the first frame the pc may be in a prologue or epilogue, which the
    opcodes do not describe, so the instructions are analysed first when
    ``function_bytes`` is given.
    """
    if is_first_frame:
        if isinstance(opcode, OpcodeNull):
            return ExecRule(NoOp())
        if function_bytes is not None:
            rule = rule_from_instruction_analysis(
                function_bytes, address_offset_within_function
            )
            if rule is not None:
                return ExecRule(rule)

    if isinstance(opcode, OpcodeNull):
        raise FunctionHasNoInfo()
    if isinstance(opcode, OpcodeFrameless):
        if not is_first_frame:
            raise CallerCannotBeFrameless()
        if opcode.stack_size_in_bytes == 0:
            return ExecRule(NoOp())
        return ExecRule(OffsetSp(opcode.stack_size_in_bytes // 16))
    if isinstance(opcode, OpcodeDwarf):
        return NeedDwarf(opcode.eh_frame_fde)
    if isinstance(opcode, OpcodeFrameBased):
        return ExecRule(UseFramePointer())
    if isinstance(opcode, OpcodeUnrecognized):
        raise BadOpcodeKind(opcode.kind)
    raise TypeError(f"unsupported opcode: {opcode!r}")


def rule_for_stub_helper(offset: int) -> CuiUnwindResult:
    """The rule for an address ``offset`` bytes into the __stub_helper section.

    The shared helper pushes a register pair (``stp x16, x17, [sp, #-0x10]!``)
    at +0x8, so between +0xc and +0x18 sp is 16 bytes lower; elsewhere sp is
    untouched and lr holds the return address.
    """
    if 0xC <= offset < 0x18:
        return ExecRule(OffsetSp(1))
    return ExecRule(NoOp())