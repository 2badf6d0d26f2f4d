"""Backward analysis of Aarch64 prologues ending at the instruction pointer."""

from __future__ import annotations

import enum
import struct

from framehop.aarch64.unwind_rule import NoOp, OffsetSp, UnwindRuleAarch64

__all__ = [
    "PrologueInstructionType",
    "PrologueDetectorAarch64",
    "analyze_prologue_instruction_type",
    "unwind_rule_from_detected_prologue",
]

PACIBSP = 0xD503237F
MOV_X29_SP = 0x910003FD


class PrologueInstructionType(enum.Enum):
    """How likely an instruction is to belong to a prologue."""

    NOT_EXPECTED_IN_PROLOGUE = enum.auto()
    COULD_BE_PART_OF_PROLOGUE_IF_THERE_IS_ALSO_A_STACK_POINTER_SUB = enum.auto()
    VERY_LIKELY_PART_OF_PROLOGUE = enum.auto()


def analyze_prologue_instruction_type(word: int) -> PrologueInstructionType:
    """Classify the instruction about to be executed."""
    if word in (PACIBSP, MOV_X29_SP):
        return PrologueInstructionType.VERY_LIKELY_PART_OF_PROLOGUE

    bits_22_to_32 = word >> 22

    # Stores of register pairs to the stack.
    if bits_22_to_32 & 0b1011111001 == 0b1010100000:
        writeback_bits = bits_22_to_32 & 0b110
        reference_reg = (word >> 5) & 0b11111
        if writeback_bits == 0b000 or reference_reg != 31:
            return PrologueInstructionType.NOT_EXPECTED_IN_PROLOGUE
        if writeback_bits == 0b100:
            # No writeback: such stores also occur in function bodies.
            return (
                PrologueInstructionType.COULD_BE_PART_OF_PROLOGUE_IF_THERE_IS_ALSO_A_STACK_POINTER_SUB
            )
        return PrologueInstructionType.VERY_LIKELY_PART_OF_PROLOGUE

    # `sub sp, sp, #imm` and `add fp, sp, #imm`.
    if bits_22_to_32 & 0b1011111110 == 0b1001000100:
        result_reg = word & 0b11111
        input_reg = (word >> 5) & 0b11111
        is_sub = (word >> 30) & 0b1 == 0b1
        expected_result_reg = 31 if is_sub else 29
        if input_reg != 31 or result_reg != expected_result_reg:
            return PrologueInstructionType.NOT_EXPECTED_IN_PROLOGUE
        return PrologueInstructionType.VERY_LIKELY_PART_OF_PROLOGUE

    return PrologueInstructionType.NOT_EXPECTED_IN_PROLOGUE


def _words_reversed(data: bytes):
    usable = len(data) - len(data) % 4
    words = [w for (w,) in struct.iter_unpack("<I", bytes(data[:usable]))]
    return reversed(words)


class PrologueDetectorAarch64:
    """Undoes prologue instructions to find how far sp has moved since function entry."""

    def __init__(self) -> None:
        self.sp_offset = 0

    def analyze_slices(self, slice_from_start: bytes, slice_to_end: bytes) -> int | None:
        """Return the sp offset since function entry, or None if not in a prologue.

        ``slice_from_start`` holds the already executed instructions (it may
        begin before the real function start); ``slice_to_end`` starts at the
        instruction pointer. The analysis walks backwards from the pc until it
        meets an instruction that would not be found in a prologue.
        """
        if len(slice_to_end) < 4:
            return None
        next_instruction = int.from_bytes(slice_to_end[:4], "little")
        next_type = analyze_prologue_instruction_type(next_instruction)
        if next_type is PrologueInstructionType.NOT_EXPECTED_IN_PROLOGUE:
            return None
        for word in _words_reversed(slice_from_start):
            if not self.reverse_step_instruction(word):
                break
        if (
            next_type
            is PrologueInstructionType.COULD_BE_PART_OF_PROLOGUE_IF_THERE_IS_ALSO_A_STACK_POINTER_SUB
            and self.sp_offset == 0
        ):
            return None
        return self.sp_offset

    def reverse_step_instruction(self, word: int) -> bool:
        """Undo one executed instruction; return False if it is not a prologue instruction."""
        if word == PACIBSP:
            return True

        if (word >> 22) & 0b1011111001 == 0b1010100000:
            writeback_bits = (word >> 23) & 0b11
            if writeback_bits == 0b00:
                return False
            if (word >> 5) & 0b11111 != 31:
                return False
            if writeback_bits in (0b11, 0b01):
                imm7 = (word >> 15) & 0b1111111
                if imm7 & 0b1000000:
                    imm7 -= 0b10000000
                self.sp_offset -= imm7 * 8
            return True

        if (word >> 23) & 0b111111111 == 0b110100010:
            if word & 0b11111 != 31 or (word >> 5) & 0b11111 != 31:
                return False
            imm12 = (word >> 10) & 0b111111111111
            if (word >> 22) & 0b1:
                imm12 <<= 12
            self.sp_offset += imm12
            return True

        return False


def unwind_rule_from_detected_prologue(
    slice_from_start: bytes, slice_to_end: bytes
) -> UnwindRuleAarch64 | None:
    """Return the rule for a pc inside a prologue, or None if it is not in one."""
    sp_offset = PrologueDetectorAarch64().analyze_slices(slice_from_start, slice_to_end)
    if sp_offset is None:
        return None
    quotient = abs(sp_offset) // 16
    sp_offset_by_16 = quotient if sp_offset >= 0 else -quotient
    if not 0 <= sp_offset_by_16 <= 0xFFFF:
        return None
    if sp_offset_by_16 == 0:
        return NoOp()
    return OffsetSp(sp_offset_by_16)