import pytest

from framehop.aarch64.unwind_rule import (
    CouldNotReadStack,
    DidNotAdvance,
    FramepointerUnwindingMovedBackwards,
    IntegerOverflow,
    NoOp,
    NoOpIfFirstFrameOtherwiseFp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
    OffsetSpAndRestoreLr,
    OffsetSpIfFirstFrameOtherwiseStackEndsHere,
    UseFramePointer,
    UseFramepointerWithOffsets,
    fallback_rule,
    rule_for_function_start,
    rule_for_stub_functions,
)
from framehop.aarch64.unwindregs import PtrAuthMask, UnwindRegsAarch64

STACK = [1, 2, 3, 4, 0x40, 0x100200, 5, 6, 0x70, 0x100100, 7, 8, 9, 10, 0x0, 0x0]


def read_stack(addr):
    return STACK[addr // 8]


def test_basic():
    regs = UnwindRegsAarch64(0x100300, 0x10, 0x20)
    assert NoOp().exec(True, regs, read_stack) == 0x100300
    assert regs.sp == 0x10
    assert UseFramePointer().exec(False, regs, read_stack) == 0x100200
    assert regs.sp == 0x30
    assert regs.fp == 0x40
    assert UseFramePointer().exec(False, regs, read_stack) == 0x100100
    assert regs.sp == 0x50
    assert regs.fp == 0x70
    assert UseFramePointer().exec(False, regs, read_stack) is None


def test_noop_not_first_frame_does_not_advance():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x20)
    with pytest.raises(DidNotAdvance):
        NoOp().exec(False, regs, read_stack)


def test_offset_sp_first_frame():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x20)
    assert OffsetSp(sp_offset_by_16=2).exec(True, regs, read_stack) == 0x1234
    assert (regs.lr, regs.sp, regs.fp) == (0x1234, 0x30, 0x20)


def test_offset_sp_not_first_frame():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x20)
    with pytest.raises(DidNotAdvance):
        OffsetSp(sp_offset_by_16=2).exec(False, regs, read_stack)


def test_stack_ends_here_when_not_first_frame():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x20)
    rule = OffsetSpIfFirstFrameOtherwiseStackEndsHere(sp_offset_by_16=1)
    assert rule.exec(False, regs, read_stack) is None
    assert (regs.lr, regs.sp, regs.fp) == (0x1234, 0x10, 0x20)


def test_stack_ends_here_rule_first_frame_offsets_sp():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x20)
    rule = OffsetSpIfFirstFrameOtherwiseStackEndsHere(sp_offset_by_16=1)
    assert rule.exec(True, regs, read_stack) == 0x1234
    assert regs.sp == 0x20


def test_offset_sp_and_restore_lr():
    regs = UnwindRegsAarch64(0x9999, 0x20, 0x77)
    rule = OffsetSpAndRestoreLr(sp_offset_by_16=1, lr_storage_offset_from_sp_by_8=1)
    assert rule.exec(False, regs, read_stack) == 0x100200
    assert (regs.lr, regs.sp, regs.fp) == (0x100200, 0x30, 0x77)


def test_offset_sp_and_restore_lr_without_sp_change_does_not_advance():
    regs = UnwindRegsAarch64(0x9999, 0x20, 0x77)
    rule = OffsetSpAndRestoreLr(sp_offset_by_16=0, lr_storage_offset_from_sp_by_8=1)
    with pytest.raises(DidNotAdvance):
        rule.exec(False, regs, read_stack)


def test_offset_sp_and_restore_fp_and_lr():
    regs = UnwindRegsAarch64(0x9999, 0x20, 0x77)
    rule = OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=1,
        fp_storage_offset_from_sp_by_8=0,
        lr_storage_offset_from_sp_by_8=1,
    )
    assert rule.exec(False, regs, read_stack) == 0x100200
    assert (regs.lr, regs.sp, regs.fp) == (0x100200, 0x30, 0x40)


def test_use_framepointer_with_offsets():
    regs = UnwindRegsAarch64(0x9999, 0x10, 0x20)
    rule = UseFramepointerWithOffsets(
        sp_offset_from_fp_by_8=2,
        fp_storage_offset_from_fp_by_8=0,
        lr_storage_offset_from_fp_by_8=1,
    )
    assert rule.exec(False, regs, read_stack) == 0x100200
    assert (regs.lr, regs.sp, regs.fp) == (0x100200, 0x30, 0x40)


def test_use_framepointer_with_negative_offsets():
    regs = UnwindRegsAarch64(0x9999, 0x10, 0x28)
    rule = UseFramepointerWithOffsets(
        sp_offset_from_fp_by_8=1,
        fp_storage_offset_from_fp_by_8=-1,
        lr_storage_offset_from_fp_by_8=0,
    )
    assert rule.exec(False, regs, read_stack) == 0x100200
    assert (regs.sp, regs.fp) == (0x30, 0x40)


def test_noop_if_first_frame_keeps_registers():
    regs = UnwindRegsAarch64(0x4321, 0x10, 0x20)
    assert NoOpIfFirstFrameOtherwiseFp().exec(True, regs, read_stack) == 0x4321
    assert (regs.lr, regs.sp, regs.fp) == (0x4321, 0x10, 0x20)


def test_noop_if_first_frame_otherwise_uses_fp():
    regs = UnwindRegsAarch64(0x4321, 0x10, 0x20)
    assert NoOpIfFirstFrameOtherwiseFp().exec(False, regs, read_stack) == 0x100200
    assert (regs.sp, regs.fp) == (0x30, 0x40)


def test_framepointer_overflow():
    regs = UnwindRegsAarch64(0x1234, 0x10, (1 << 64) - 8)
    with pytest.raises(IntegerOverflow):
        UseFramePointer().exec(False, regs, read_stack)


def test_negative_storage_offset_underflow():
    regs = UnwindRegsAarch64(0x1234, 0x0, 0x20)
    rule = OffsetSpAndRestoreLr(sp_offset_by_16=1, lr_storage_offset_from_sp_by_8=-1)
    with pytest.raises(IntegerOverflow):
        rule.exec(False, regs, read_stack)


def test_unreadable_stack_reports_address():
    regs = UnwindRegsAarch64(0x1234, 0x10, 0x1000)
    with pytest.raises(CouldNotReadStack) as info:
        UseFramePointer().exec(False, regs, read_stack)
    assert info.value.address == 0x1008


def test_framepointer_moving_backwards():
    stack = [0, 0, 0, 0, 0x10, 0x1234]

    def reader(addr):
        return stack[addr // 8]

    regs = UnwindRegsAarch64(0x9999, 0x8, 0x20)
    with pytest.raises(FramepointerUnwindingMovedBackwards):
        UseFramePointer().exec(False, regs, reader)
    assert (regs.sp, regs.fp) == (0x8, 0x20)


def test_return_address_is_stripped_by_mask():
    stack = [0, 0, 0, 0, 0x40, 0xABCD000000100200]

    def reader(addr):
        return stack[addr // 8]

    regs = UnwindRegsAarch64.with_ptr_auth_mask(PtrAuthMask.new_24_40(), 0x1, 0x10, 0x20)
    assert UseFramePointer().exec(False, regs, reader) == 0x100200
    assert regs.lr == 0x100200


def test_zero_return_address_ends_stack_without_changes():
    stack = [0, 0, 0, 0, 0x40, 0x0]

    def reader(addr):
        return stack[addr // 8]

    regs = UnwindRegsAarch64(0x9999, 0x10, 0x20)
    assert UseFramePointer().exec(False, regs, reader) is None
    assert (regs.lr, regs.sp, regs.fp) == (0x9999, 0x10, 0x20)


def test_field_ranges_are_validated():
    with pytest.raises(ValueError):
        OffsetSp(sp_offset_by_16=-1)
    with pytest.raises(ValueError):
        OffsetSpAndRestoreLr(sp_offset_by_16=1, lr_storage_offset_from_sp_by_8=40000)


def test_default_rules():
    assert rule_for_stub_functions() == NoOp()
    assert rule_for_function_start() == NoOp()
    assert fallback_rule() == UseFramePointer()


def test_rules_compare_by_value():
    assert OffsetSp(sp_offset_by_16=3) == OffsetSp(sp_offset_by_16=3)
    assert OffsetSp(sp_offset_by_16=3) != OffsetSpIfFirstFrameOtherwiseStackEndsHere(
        sp_offset_by_16=3
    )