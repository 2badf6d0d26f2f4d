"""Classification of single Aarch64 instructions that may appear in epilogues."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EpilogueInstructionType",
    "NotExpectedInEpilogue",
    "CouldBeTailCall",
    "CouldBePartOfAuthTailCall",
    "VeryLikelyPartOfEpilogue",
    "analyze_instruction",
    "instruction_adjusts_stack_pointer",
    "is_auth_tail_call",
]

RET = 0xD65F03C0
RETAB = 0xD65F0FFF
AUTIBSP = 0xD50323FF
EOR_X16_LR_LR_LSL_1 = 0xCA1E07D0
TBZ_X16_62_PLUS_8 = 0xB6F00050
BRK_C471 = 0xD4388E20

AUTIBSP_BYTES = AUTIBSP.to_bytes(4, "little")
_EOR_TBZ_BRK = b"".join(
    w.to_bytes(4, "little") for w in (EOR_X16_LR_LR_LSL_1, TBZ_X16_62_PLUS_8, BRK_C471)
)


class EpilogueInstructionType:
    """Base class of the instruction classifications."""

    __slots__ = ()


@dataclass(frozen=True)
class NotExpectedInEpilogue(EpilogueInstructionType):
    """An instruction that does not belong to an epilogue."""


@dataclass(frozen=True)
class CouldBeTailCall(EpilogueInstructionType):
    """A branch that may be a tail call.

    ``offset_of_expected_autibsp`` is how many bytes before this instruction
    the autibsp of an authenticated tail call would be.
    """

    offset_of_expected_autibsp: int


@dataclass(frozen=True)
class CouldBePartOfAuthTailCall(EpilogueInstructionType):
    """An instruction of the autibsp tail-call sequence, ``offset`` bytes after autibsp."""

    offset_of_expected_autibsp: int


@dataclass(frozen=True)
class VeryLikelyPartOfEpilogue(EpilogueInstructionType):
    """A return, an sp-relative 64-bit load, or an add to sp."""


def _word(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 4], "little")


def _is_mov_x16_imm(word: int) -> bool:
    return (word >> 23) & 0b111000111 == 0b110000101 and word & 0b11111 == 16


def _is_braa_x16(word: int) -> bool:
    return word & 0xFFFFFC00 == 0xD71F0800 and word & 0b11111 == 16


def instruction_adjusts_stack_pointer(word: int) -> bool:
    """Whether ``word`` changes sp: a writeback load from sp, or an immediate add on sp."""
    if (word >> 22) & 0b1011111011 == 0b1010100011 and (word >> 5) & 0b11111 == 31:
        return True
    return (
        (word >> 23) & 0b111111111 == 0b100100010
        and word & 0b11111 == 31
        and (word >> 5) & 0b11111 == 31
    )


def is_auth_tail_call(bytes_after_autibsp: bytes) -> bool:
    """Whether the bytes after an autibsp form the checked tail-call sequence.

    The sequence is ``eor x16, lr, lr, lsl #1``, ``tbz x16, 62, +8``,
    ``brk #0xc471`` and then either ``b target`` or
    ``mov x16, #imm`` followed by ``braa xN, x16``.
    """
    if len(bytes_after_autibsp) < 16:
        return False
    if bytes(bytes_after_autibsp[:12]) != _EOR_TBZ_BRK:
        return False

    first = _word(bytes_after_autibsp, 12)
    if first >> 26 == 0b000101:
        return True

    if len(bytes_after_autibsp) < 20:
        return False
    if not _is_mov_x16_imm(first):
        return False
    return _is_braa_x16(_word(bytes_after_autibsp, 16))


def analyze_instruction(word: int) -> EpilogueInstructionType:
    """Classify one instruction by how it could relate to an epilogue."""
    if word in (RET, RETAB):
        return VeryLikelyPartOfEpilogue()
    if word == AUTIBSP:
        return CouldBePartOfAuthTailCall(0)
    if word == EOR_X16_LR_LR_LSL_1:
        return CouldBePartOfAuthTailCall(4)
    if word == TBZ_X16_62_PLUS_8:
        return CouldBePartOfAuthTailCall(8)
    if word == BRK_C471:
        return CouldBePartOfAuthTailCall(12)
    # `b` or `br xN`: a branch inside the function or a tail call.
    if word >> 26 == 0b000101 or word & 0xFFFFFC1F == 0xD61F0000:
        return CouldBeTailCall(16)
    if _is_mov_x16_imm(word):
        return CouldBePartOfAuthTailCall(16)
    if _is_braa_x16(word):
        return CouldBePartOfAuthTailCall(20)
    if (word >> 22) & 0b1011111001 == 0b1010100001:
        # Register pair loads of the kind seen in epilogues.
        writeback_bits = (word >> 23) & 0b11
        if writeback_bits == 0b00:
            return NotExpectedInEpilogue()
        if (word >> 5) & 0b11111 != 31:
            return NotExpectedInEpilogue()
        return VeryLikelyPartOfEpilogue()
    if (word >> 23) & 0b111111111 == 0b100100010:
        # 64-bit add immediate; only `add sp, sp, #imm` belongs to epilogues.
        if word & 0b11111 != 31 or (word >> 5) & 0b11111 != 31:
            return NotExpectedInEpilogue()
        return VeryLikelyPartOfEpilogue()
    return NotExpectedInEpilogue()