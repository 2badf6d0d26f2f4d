"""Unwind rules derived from the instructions around the pc on Aarch64."""

from __future__ import annotations

from framehop.aarch64.epilogue import unwind_rule_from_detected_epilogue
from framehop.aarch64.prologue import unwind_rule_from_detected_prologue
from framehop.aarch64.unwind_rule import UnwindRuleAarch64

__all__ = [
    "rule_from_prologue_analysis",
    "rule_from_epilogue_analysis",
    "rule_from_instruction_analysis",
]


def rule_from_prologue_analysis(text_bytes: bytes, pc_offset: int) -> UnwindRuleAarch64 | None:
    """The rule for ``pc_offset`` if it is inside a prologue."""
    if not 0 <= pc_offset <= len(text_bytes):
        raise ValueError(f"pc offset {pc_offset} is outside the {len(text_bytes)} text bytes")
    return unwind_rule_from_detected_prologue(text_bytes[:pc_offset], text_bytes[pc_offset:])


def rule_from_epilogue_analysis(text_bytes: bytes, pc_offset: int) -> UnwindRuleAarch64 | None:
    """The rule for ``pc_offset`` if it is inside an epilogue."""
    return unwind_rule_from_detected_epilogue(text_bytes, pc_offset)


def rule_from_instruction_analysis(
    text_bytes: bytes, pc_offset: int
) -> UnwindRuleAarch64 | None:
    """Try prologue analysis first, then epilogue analysis."""
    rule = rule_from_prologue_analysis(text_bytes, pc_offset)
    if rule is not None:
        return rule
    return rule_from_epilogue_analysis(text_bytes, pc_offset)