"""Translation of DWARF CFI rows into cacheable Aarch64 unwind rules."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from framehop.aarch64.unwind_rule import (
    NoOpIfFirstFrameOtherwiseFp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
    OffsetSpAndRestoreLr,
    OffsetSpIfFirstFrameOtherwiseStackEndsHere,
    UnwindRuleAarch64,
    UseFramePointer,
    UseFramepointerWithOffsets,
)

__all__ = [
    "AARCH64_X29",
    "AARCH64_X30",
    "AARCH64_SP",
    "ConversionError",
    "ConversionErrorKind",
    "CfaRegisterAndOffset",
    "CfaExpression",
    "RuleUndefined",
    "RuleSameValue",
    "RuleOffset",
    "RuleOther",
    "register_rule_to_cfa_offset",
    "translate_into_unwind_rule",
    "rule_if_uncovered_by_fde",
]

# DWARF register numbers on Aarch64.
AARCH64_X29 = 29
AARCH64_X30 = 30
AARCH64_SP = 31


class ConversionErrorKind(enum.Enum):
    """Why a CFI row could not be turned into a cacheable rule."""

    CFA_IS_EXPRESSION = "the CFA is computed by an expression"
    CFA_IS_OFFSET_FROM_UNKNOWN_REGISTER = "the CFA is an offset from an unknown register"
    SP_OFFSET_DOES_NOT_FIT = "the sp offset does not fit"
    SP_OFFSET_FROM_FP_DOES_NOT_FIT = "the sp offset from fp does not fit"
    LR_STORAGE_OFFSET_DOES_NOT_FIT = "the lr storage offset does not fit"
    FP_STORAGE_OFFSET_DOES_NOT_FIT = "the fp storage offset does not fit"
    REGISTER_NOT_STORED_RELATIVE_TO_CFA = "a register is not stored relative to the CFA"
    RESTORING_FP_BUT_NOT_LR = "fp is restored but lr is not"
    FRAME_POINTER_RULE_DOES_NOT_RESTORE_LR = "the frame pointer rule does not restore lr"
    FRAME_POINTER_RULE_DOES_NOT_RESTORE_FP = "the frame pointer rule does not restore fp"


class ConversionError(Exception):
    """A CFI row has no equivalent cacheable unwind rule."""

    def __init__(self, kind: ConversionErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind


@dataclass(frozen=True)
class CfaRegisterAndOffset:
    """CFA = value of ``register`` + ``offset``."""

    register: int
    offset: int


@dataclass(frozen=True)
class CfaExpression:
    """CFA computed by a DWARF expression."""

    expression: bytes = b""


CfaRule = Union[CfaRegisterAndOffset, CfaExpression]


@dataclass(frozen=True)
class RuleUndefined:
    """The register's previous value cannot be recovered."""


@dataclass(frozen=True)
class RuleSameValue:
    """The register keeps its value in the caller."""


@dataclass(frozen=True)
class RuleOffset:
    """The register is saved at address CFA + ``offset``."""

    offset: int


@dataclass(frozen=True)
class RuleOther:
    """Any other register rule (register copy, expression, and so on)."""

    description: str = ""


RegisterRule = Union[RuleUndefined, RuleSameValue, RuleOffset, RuleOther]


def _div_trunc(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def _to_u16(value: int, kind: ConversionErrorKind) -> int:
    if not 0 <= value <= 0xFFFF:
        raise ConversionError(kind)
    return value


def _to_i16(value: int, kind: ConversionErrorKind) -> int:
    if not -0x8000 <= value <= 0x7FFF:
        raise ConversionError(kind)
    return value


def register_rule_to_cfa_offset(rule: RegisterRule) -> int | None:
    """Return the CFA-relative storage offset of a register, or None if not stored.

    Raises ConversionError if the register is recovered some other way.
    """
    if isinstance(rule, (RuleUndefined, RuleSameValue)):
        return None
    if isinstance(rule, RuleOffset):
        return rule.offset
    raise ConversionError(ConversionErrorKind.REGISTER_NOT_STORED_RELATIVE_TO_CFA)


def _storage_offset(cfa_offset: int, reg_offset: int, kind: ConversionErrorKind) -> int:
    return _to_i16(_div_trunc(cfa_offset + reg_offset, 8), kind)


def _translate_sp_based(
    offset: int, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    sp_offset_by_16 = _to_u16(
        _div_trunc(offset, 16), ConversionErrorKind.SP_OFFSET_DOES_NOT_FIT
    )
    lr_cfa_offset = register_rule_to_cfa_offset(lr_rule)
    fp_cfa_offset = register_rule_to_cfa_offset(fp_rule)

    if lr_cfa_offset is None:
        if fp_cfa_offset is not None:
            raise ConversionError(ConversionErrorKind.RESTORING_FP_BUT_NOT_LR)
        # An undefined return address either marks the root of the stack or
        # was omitted from the table where "same value" was meant; only the
        # first frame may treat it as the latter.
        if isinstance(lr_rule, RuleUndefined):
            return OffsetSpIfFirstFrameOtherwiseStackEndsHere(sp_offset_by_16)
        return OffsetSp(sp_offset_by_16)

    lr_storage = _storage_offset(
        offset, lr_cfa_offset, ConversionErrorKind.LR_STORAGE_OFFSET_DOES_NOT_FIT
    )
    if fp_cfa_offset is None:
        return OffsetSpAndRestoreLr(sp_offset_by_16, lr_storage)
    fp_storage = _storage_offset(
        offset, fp_cfa_offset, ConversionErrorKind.FP_STORAGE_OFFSET_DOES_NOT_FIT
    )
    return OffsetSpAndRestoreFpAndLr(sp_offset_by_16, fp_storage, lr_storage)


def _translate_fp_based(
    offset: int, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    lr_cfa_offset = register_rule_to_cfa_offset(lr_rule)
    if lr_cfa_offset is None:
        raise ConversionError(ConversionErrorKind.FRAME_POINTER_RULE_DOES_NOT_RESTORE_LR)
    fp_cfa_offset = register_rule_to_cfa_offset(fp_rule)
    if fp_cfa_offset is None:
        raise ConversionError(ConversionErrorKind.FRAME_POINTER_RULE_DOES_NOT_RESTORE_FP)

    if offset == 16 and fp_cfa_offset == -16 and lr_cfa_offset == -8:
        return UseFramePointer()

    sp_offset_from_fp_by_8 = _to_u16(
        _div_trunc(offset, 8), ConversionErrorKind.SP_OFFSET_FROM_FP_DOES_NOT_FIT
    )
    lr_storage = _storage_offset(
        offset, lr_cfa_offset, ConversionErrorKind.LR_STORAGE_OFFSET_DOES_NOT_FIT
    )
    fp_storage = _storage_offset(
        offset, fp_cfa_offset, ConversionErrorKind.FP_STORAGE_OFFSET_DOES_NOT_FIT
    )
    return UseFramepointerWithOffsets(sp_offset_from_fp_by_8, fp_storage, lr_storage)


def translate_into_unwind_rule(
    cfa_rule: CfaRule, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    """Turn the CFA, fp and lr rules of a CFI row into a cacheable unwind rule.

    Raises ConversionError when the row cannot be expressed as such a rule.
    """
    if isinstance(cfa_rule, CfaExpression):
        raise ConversionError(ConversionErrorKind.CFA_IS_EXPRESSION)
    if not isinstance(cfa_rule, CfaRegisterAndOffset):
        raise TypeError(f"unsupported CFA rule: {cfa_rule!r}")
    if cfa_rule.register == AARCH64_SP:
        return _translate_sp_based(cfa_rule.offset, fp_rule, lr_rule)
    if cfa_rule.register == AARCH64_X29:
        return _translate_fp_based(cfa_rule.offset, fp_rule, lr_rule)
    raise ConversionError(ConversionErrorKind.CFA_IS_OFFSET_FROM_UNKNOWN_REGISTER)


def rule_if_uncovered_by_fde() -> UnwindRuleAarch64:
    """The rule used for addresses that no FDE covers."""
    return NoOpIfFirstFrameOtherwiseFp()