"""Forward analysis of Aarch64 epilogues starting at the instruction pointer."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from framehop.aarch64.epilogue_patterns import (
    AUTIBSP,
    AUTIBSP_BYTES,
    RET,
    RETAB,
    CouldBePartOfAuthTailCall,
    CouldBeTailCall,
    NotExpectedInEpilogue,
    analyze_instruction,
    instruction_adjusts_stack_pointer,
    is_auth_tail_call,
)

__all__ = [
    "UnexpectedInstructionType",
    "StepResult",
    "ProbablyStillInBody",
    "ReachedFunctionEndWithoutReturn",
    "FoundReturnOrTailCall",
    "EpilogueResult",
    "EpilogueDetectorAarch64",
]


class UnexpectedInstructionType(enum.Enum):
    """Why an instruction was judged to belong to the function body."""

    LOAD_OF_WRONG_SIZE = enum.auto()
    LOAD_REFERENCE_REGISTER_NOT_SP = enum.auto()
    ADD_SUB_NOT_OPERATING_ON_SP = enum.auto()
    AUTIBSP_NOT_FOLLOWED_BY_EXPECTED_TAIL_CALL = enum.auto()
    BRANCH_WITH_UNADJUSTED_STACK_POINTER = enum.auto()
    UNKNOWN = enum.auto()


class StepResult(enum.Enum):
    """Outcome of stepping over one epilogue instruction.

    An instruction that belongs to the body is reported as an
    UnexpectedInstructionType instead.
    """

    NEED_MORE = enum.auto()
    FOUND_RETURN = enum.auto()
    FOUND_TAIL_CALL = enum.auto()
    COULD_BE_AUTH_TAIL_CALL = enum.auto()


@dataclass(frozen=True)
class ProbablyStillInBody:
    """The instruction pointer is most likely in the function body."""

    reason: UnexpectedInstructionType


@dataclass(frozen=True)
class ReachedFunctionEndWithoutReturn:
    """The bytes ran out before a return or tail call was found."""


@dataclass(frozen=True)
class FoundReturnOrTailCall:
    """An epilogue was found; offsets are in bytes relative to the current sp."""

    sp_offset: int
    fp_offset_from_initial_sp: int | None = None
    lr_offset_from_initial_sp: int | None = None


EpilogueResult = Union[
    ProbablyStillInBody, ReachedFunctionEndWithoutReturn, FoundReturnOrTailCall
]


def _word_at(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 4], "little")


def _is_auth_tail_call_ending_at(function_bytes: bytes, pc_offset: int, back: int) -> bool:
    """Whether an autibsp sequence starts ``back`` bytes before ``pc_offset``."""
    if pc_offset < back:
        return False
    start = pc_offset - back
    return bytes(function_bytes[start:start + 4]) == AUTIBSP_BYTES and is_auth_tail_call(
        function_bytes[start + 4:]
    )


class EpilogueDetectorAarch64:
    """Tracks sp adjustments and fp / lr reloads while walking an epilogue."""

    def __init__(self) -> None:
        self.sp_offset = 0
        self.fp_offset_from_initial_sp: int | None = None
        self.lr_offset_from_initial_sp: int | None = None

    def _found(self) -> FoundReturnOrTailCall:
        return FoundReturnOrTailCall(
            self.sp_offset, self.fp_offset_from_initial_sp, self.lr_offset_from_initial_sp
        )

    def analyze_slice(self, function_bytes: bytes, pc_offset: int) -> EpilogueResult:
        """Decide whether the instruction at ``pc_offset`` is inside an epilogue."""
        if not 0 <= pc_offset <= len(function_bytes):
            raise ValueError(
                f"pc offset {pc_offset} is outside the {len(function_bytes)} function bytes"
            )
        if len(function_bytes) - pc_offset < 4:
            return ReachedFunctionEndWithoutReturn()

        kind = analyze_instruction(_word_at(function_bytes, pc_offset))
        if isinstance(kind, NotExpectedInEpilogue):
            return ProbablyStillInBody(UnexpectedInstructionType.UNKNOWN)
        if isinstance(kind, CouldBeTailCall):
            if _is_auth_tail_call_ending_at(
                function_bytes, pc_offset, kind.offset_of_expected_autibsp
            ):
                return FoundReturnOrTailCall(0)
            if pc_offset >= 4 and instruction_adjusts_stack_pointer(
                _word_at(function_bytes, pc_offset - 4)
            ):
                return FoundReturnOrTailCall(0)
            return ProbablyStillInBody(UnexpectedInstructionType.UNKNOWN)
        if isinstance(kind, CouldBePartOfAuthTailCall):
            if _is_auth_tail_call_ending_at(
                function_bytes, pc_offset, kind.offset_of_expected_autibsp
            ):
                return FoundReturnOrTailCall(0)
            return ProbablyStillInBody(UnexpectedInstructionType.UNKNOWN)

        pos = pc_offset
        while True:
            word = _word_at(function_bytes, pos)
            pos += 4
            outcome = self.step_instruction(word)
            if outcome is StepResult.NEED_MORE:
                if len(function_bytes) - pos < 4:
                    return ReachedFunctionEndWithoutReturn()
                continue
            if isinstance(outcome, UnexpectedInstructionType):
                return ProbablyStillInBody(outcome)
            if outcome is StepResult.COULD_BE_AUTH_TAIL_CALL and not is_auth_tail_call(
                function_bytes[pos:]
            ):
                return ProbablyStillInBody(
                    UnexpectedInstructionType.AUTIBSP_NOT_FOLLOWED_BY_EXPECTED_TAIL_CALL
                )
            return self._found()

    def step_instruction(self, word: int) -> StepResult | UnexpectedInstructionType:
        """Step forward over one instruction and update the tracked offsets."""
        if word in (RET, RETAB):
            return StepResult.FOUND_RETURN
        if word == AUTIBSP:
            return StepResult.COULD_BE_AUTH_TAIL_CALL
        if word >> 26 == 0b000101:
            # A `b` after stack pointer adjustments is taken to be a tail call.
            if self.sp_offset != 0:
                return StepResult.FOUND_TAIL_CALL
            return UnexpectedInstructionType.BRANCH_WITH_UNADJUSTED_STACK_POINTER
        if (word >> 22) & 0b1011111001 == 0b1010100001:
            writeback_bits = (word >> 23) & 0b11
            if writeback_bits == 0b00:
                return UnexpectedInstructionType.LOAD_OF_WRONG_SIZE
            if (word >> 5) & 0b11111 != 31:
                return UnexpectedInstructionType.LOAD_REFERENCE_REGISTER_NOT_SP
            is_preindexed = writeback_bits == 0b11
            is_postindexed = writeback_bits == 0b01
            imm7 = (word >> 15) & 0b1111111
            if imm7 & 0b1000000:
                imm7 -= 0b10000000
            imm7 *= 8
            reg_loc = self.sp_offset if is_postindexed else self.sp_offset + imm7
            for reg, location in ((word & 0b11111, reg_loc), ((word >> 10) & 0b11111, reg_loc + 8)):
                if reg == 29:
                    self.fp_offset_from_initial_sp = location
                elif reg == 30:
                    self.lr_offset_from_initial_sp = location
            if is_preindexed or is_postindexed:
                self.sp_offset += imm7
            return StepResult.NEED_MORE
        if (word >> 23) & 0b111111111 == 0b100100010:
            if word & 0b11111 != 31 or (word >> 5) & 0b11111 != 31:
                return UnexpectedInstructionType.ADD_SUB_NOT_OPERATING_ON_SP
            imm12 = (word >> 10) & 0b111111111111
            if (word >> 22) & 0b1:
                imm12 <<= 12
            self.sp_offset += imm12
            return StepResult.NEED_MORE
        return UnexpectedInstructionType.UNKNOWN