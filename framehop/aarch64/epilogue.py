"""Unwind rules for an instruction pointer inside an Aarch64 epilogue."""

from __future__ import annotations

from framehop.aarch64.epilogue_detector import EpilogueDetectorAarch64, FoundReturnOrTailCall
from framehop.aarch64.unwind_rule import (
    NoOp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
    OffsetSpAndRestoreLr,
    UnwindRuleAarch64,
)

__all__ = ["unwind_rule_from_detected_epilogue"]


def _div_trunc(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def _fits_u16(value: int) -> bool:
    return 0 <= value <= 0xFFFF


def _fits_i16(value: int) -> bool:
    return -0x8000 <= value <= 0x7FFF


def unwind_rule_from_detected_epilogue(
    function_bytes: bytes, pc_offset: int
) -> UnwindRuleAarch64 | None:
    """Return the rule for ``pc_offset`` if it lies in an epilogue, else None."""
    result = EpilogueDetectorAarch64().analyze_slice(function_bytes, pc_offset)
    if not isinstance(result, FoundReturnOrTailCall):
        return None

    sp_offset_by_16 = _div_trunc(result.sp_offset, 16)
    if not _fits_u16(sp_offset_by_16):
        return None
    fp_offset = result.fp_offset_from_initial_sp
    lr_offset = result.lr_offset_from_initial_sp

    if lr_offset is None:
        if fp_offset is not None:
            return None
        if sp_offset_by_16 == 0:
            return NoOp()
        return OffsetSp(sp_offset_by_16)

    lr_by_8 = _div_trunc(lr_offset, 8)
    if not _fits_i16(lr_by_8):
        return None
    if fp_offset is None:
        return OffsetSpAndRestoreLr(sp_offset_by_16, lr_by_8)
    fp_by_8 = _div_trunc(fp_offset, 8)
    if not _fits_i16(fp_by_8):
        return None
    return OffsetSpAndRestoreFpAndLr(sp_offset_by_16, fp_by_8, lr_by_8)