import pytest

from framehop.aarch64.instruction_analysis import (
    rule_from_epilogue_analysis,
    rule_from_instruction_analysis,
    rule_from_prologue_analysis,
)
from framehop.aarch64.unwind_rule import NoOp, OffsetSp, OffsetSpAndRestoreFpAndLr

PROLOGUE_1 = bytes([
    0xff, 0x43, 0x01, 0xd1, 0xf6, 0x57, 0x02, 0xa9, 0xf4, 0x4f, 0x03, 0xa9, 0xfd, 0x7b,
    0x04, 0xa9, 0xfd, 0x03, 0x01, 0x91, 0xf4, 0x03, 0x04, 0xaa, 0xf5, 0x03, 0x01, 0xaa,
])

EPILOGUE_1 = bytes([
    0xfd, 0x7b, 0x44, 0xa9, 0xf4, 0x4f, 0x43, 0xa9, 0xf6, 0x57, 0x42, 0xa9, 0xff, 0x43,
    0x01, 0x91, 0xc0, 0x03, 0x5f, 0xd6,
])


def test_prologue_analysis_splits_at_pc():
    assert rule_from_prologue_analysis(PROLOGUE_1, 0) == NoOp()
    assert rule_from_prologue_analysis(PROLOGUE_1, 4) == OffsetSp(5)
    assert rule_from_prologue_analysis(PROLOGUE_1, 20) is None


def test_epilogue_analysis():
    assert rule_from_epilogue_analysis(EPILOGUE_1, 0) == OffsetSpAndRestoreFpAndLr(5, 8, 9)
    assert rule_from_epilogue_analysis(EPILOGUE_1, 16) == NoOp()
    assert rule_from_epilogue_analysis(EPILOGUE_1, 20) is None


def test_instruction_analysis_uses_prologue():
    assert rule_from_instruction_analysis(PROLOGUE_1, 8) == OffsetSp(5)


def test_instruction_analysis_falls_back_to_epilogue():
    assert rule_from_prologue_analysis(EPILOGUE_1, 0) is None
    assert rule_from_instruction_analysis(EPILOGUE_1, 0) == OffsetSpAndRestoreFpAndLr(5, 8, 9)
    assert rule_from_instruction_analysis(EPILOGUE_1, 4) == OffsetSp(5)


def test_instruction_analysis_in_body():
    assert rule_from_instruction_analysis(PROLOGUE_1, 20) is None
    assert rule_from_instruction_analysis(PROLOGUE_1, 24) is None


def test_pc_offset_out_of_range():
    with pytest.raises(ValueError):
        rule_from_prologue_analysis(PROLOGUE_1, len(PROLOGUE_1) + 4)
    with pytest.raises(ValueError):
        rule_from_instruction_analysis(PROLOGUE_1, -1)