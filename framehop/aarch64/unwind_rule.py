"""Cacheable unwind rules for Aarch64 and their execution."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from framehop.aarch64.unwindregs import UnwindRegsAarch64
from framehop.add_signed import checked_add_signed

__all__ = [
    "UnwindError",
    "DidNotAdvance",
    "IntegerOverflow",
    "CouldNotReadStack",
    "FramepointerUnwindingMovedBackwards",
    "UnwindRuleAarch64",
    "NoOp",
    "NoOpIfFirstFrameOtherwiseFp",
    "OffsetSp",
    "OffsetSpIfFirstFrameOtherwiseStackEndsHere",
    "OffsetSpAndRestoreLr",
    "OffsetSpAndRestoreFpAndLr",
    "UseFramePointer",
    "UseFramepointerWithOffsets",
    "rule_for_stub_functions",
    "rule_for_function_start",
    "fallback_rule",
]

_U64_MAX = (1 << 64) - 1

ReadStack = Callable[[int], int]


class UnwindError(Exception):
    """Unwinding a frame failed."""


class DidNotAdvance(UnwindError):
    """The unwind step did not move the stack pointer."""

    def __init__(self) -> None:
        super().__init__("the stack pointer did not advance")


class IntegerOverflow(UnwindError):
    """An address computation overflowed 64 bits."""

    def __init__(self) -> None:
        super().__init__("integer overflow during unwinding")


class CouldNotReadStack(UnwindError):
    """The stack memory at ``address`` could not be read."""

    def __init__(self, address: int) -> None:
        super().__init__(f"could not read stack memory at {address:#x}")
        self.address = address


class FramepointerUnwindingMovedBackwards(UnwindError):
    """Frame pointer unwinding produced a frame below the current one."""

    def __init__(self) -> None:
        super().__init__("frame pointer unwinding moved backwards")


def _checked_add(lhs: int, rhs: int) -> int:
    result = lhs + rhs
    if result > _U64_MAX:
        raise IntegerOverflow()
    return result


def _offset(base: int, signed_offset: int) -> int:
    result = checked_add_signed(base, signed_offset)
    if result is None:
        raise IntegerOverflow()
    return result


def _read(read_stack: ReadStack, address: int) -> int:
    try:
        return read_stack(address)
    except Exception as exc:
        raise CouldNotReadStack(address) from exc


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name}={value} is outside [{low}, {high}]")


def _check_u16(name: str, value: int) -> None:
    _check_range(name, value, 0, 0xFFFF)


def _check_i16(name: str, value: int) -> None:
    _check_range(name, value, -0x8000, 0x7FFF)


class UnwindRuleAarch64(ABC):
    """A rule that computes the caller's (lr, sp, fp) from the current registers."""

    __slots__ = ()

    @abstractmethod
    def _transition(
        self, is_first_frame: bool, regs: UnwindRegsAarch64, read_stack: ReadStack
    ) -> tuple[int, int, int] | None:
        """Return the new (lr, sp, fp), or None if the stack ends here."""

    def exec(
        self, is_first_frame: bool, regs: UnwindRegsAarch64, read_stack: ReadStack
    ) -> int | None:
        """Apply the rule to ``regs`` and return the caller's return address.

        Returns None when the stack ends. ``read_stack`` reads one 64-bit
        word at an address and may raise on failure.
        """
        sp = regs.sp
        step = self._transition(is_first_frame, regs, read_stack)
        if step is None:
            return None
        new_lr, new_sp, new_fp = step
        return_address = regs.lr_mask.strip_ptr_auth(new_lr)
        if return_address == 0:
            return None
        if not is_first_frame and new_sp == sp:
            raise DidNotAdvance()
        regs.lr = new_lr
        regs.sp = new_sp
        regs.fp = new_fp
        return return_address


def _frame_pointer_step(
    regs: UnwindRegsAarch64, read_stack: ReadStack
) -> tuple[int, int, int]:
    fp = regs.fp
    new_sp = _checked_add(fp, 16)
    new_lr = _read(read_stack, fp + 8)
    new_fp = _read(read_stack, fp)
    return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class NoOp(UnwindRuleAarch64):
    """(sp, fp, lr) stay unchanged. Only valid for the first frame."""

    def _transition(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            raise DidNotAdvance()
        return regs.lr, regs.sp, regs.fp


@dataclass(frozen=True)
class NoOpIfFirstFrameOtherwiseFp(UnwindRuleAarch64):
    """Unchanged for the first frame, frame pointer unwinding otherwise."""

    def _transition(self, is_first_frame, regs, read_stack):
        if is_first_frame:
            return regs.lr, regs.sp, regs.fp
        new_lr, new_sp, new_fp = _frame_pointer_step(regs, read_stack)
        if new_sp <= regs.sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class OffsetSp(UnwindRuleAarch64):
    """sp += 16 * sp_offset_by_16. Only valid for the first frame."""

    sp_offset_by_16: int

    def __post_init__(self) -> None:
        _check_u16("sp_offset_by_16", self.sp_offset_by_16)

    def _transition(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            raise DidNotAdvance()
        new_sp = _checked_add(regs.sp, self.sp_offset_by_16 * 16)
        return regs.lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpIfFirstFrameOtherwiseStackEndsHere(UnwindRuleAarch64):
    """sp += 16 * sp_offset_by_16 for the first frame; otherwise the stack ends."""

    sp_offset_by_16: int

    def __post_init__(self) -> None:
        _check_u16("sp_offset_by_16", self.sp_offset_by_16)

    def _transition(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            return None
        new_sp = _checked_add(regs.sp, self.sp_offset_by_16 * 16)
        return regs.lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpAndRestoreLr(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, fp, *(sp + 8y))."""

    sp_offset_by_16: int
    lr_storage_offset_from_sp_by_8: int

    def __post_init__(self) -> None:
        _check_u16("sp_offset_by_16", self.sp_offset_by_16)
        _check_i16("lr_storage_offset_from_sp_by_8", self.lr_storage_offset_from_sp_by_8)

    def _transition(self, is_first_frame, regs, read_stack):
        sp = regs.sp
        new_sp = _checked_add(sp, self.sp_offset_by_16 * 16)
        lr_location = _offset(sp, self.lr_storage_offset_from_sp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        return new_lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpAndRestoreFpAndLr(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, *(sp + 8y), *(sp + 8z))."""

    sp_offset_by_16: int
    fp_storage_offset_from_sp_by_8: int
    lr_storage_offset_from_sp_by_8: int

    def __post_init__(self) -> None:
        _check_u16("sp_offset_by_16", self.sp_offset_by_16)
        _check_i16("fp_storage_offset_from_sp_by_8", self.fp_storage_offset_from_sp_by_8)
        _check_i16("lr_storage_offset_from_sp_by_8", self.lr_storage_offset_from_sp_by_8)

    def _transition(self, is_first_frame, regs, read_stack):
        sp = regs.sp
        new_sp = _checked_add(sp, self.sp_offset_by_16 * 16)
        lr_location = _offset(sp, self.lr_storage_offset_from_sp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        fp_location = _offset(sp, self.fp_storage_offset_from_sp_by_8 * 8)
        new_fp = _read(read_stack, fp_location)
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class UseFramePointer(UnwindRuleAarch64):
    """(sp, fp, lr) = (fp + 16, *fp, *(fp + 8)).

    Frame-based functions store the caller's fp and lr next to each other
    and point fp at the stored fp, so *fp is the caller's frame pointer and
    *(fp + 8) is the return address.
    """

    def _transition(self, is_first_frame, regs, read_stack):
        fp, sp = regs.fp, regs.sp
        new_lr, new_sp, new_fp = _frame_pointer_step(regs, read_stack)
        if new_fp == 0:
            return None
        if new_fp <= fp or new_sp <= sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class UseFramepointerWithOffsets(UnwindRuleAarch64):
    """(sp, fp, lr) = (fp + 8x, *(fp + 8y), *(fp + 8z))."""

    sp_offset_from_fp_by_8: int
    fp_storage_offset_from_fp_by_8: int
    lr_storage_offset_from_fp_by_8: int

    def __post_init__(self) -> None:
        _check_u16("sp_offset_from_fp_by_8", self.sp_offset_from_fp_by_8)
        _check_i16("fp_storage_offset_from_fp_by_8", self.fp_storage_offset_from_fp_by_8)
        _check_i16("lr_storage_offset_from_fp_by_8", self.lr_storage_offset_from_fp_by_8)

    def _transition(self, is_first_frame, regs, read_stack):
        fp, sp = regs.fp, regs.sp
        new_sp = _checked_add(fp, self.sp_offset_from_fp_by_8 * 8)
        lr_location = _offset(fp, self.lr_storage_offset_from_fp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        fp_location = _offset(fp, self.fp_storage_offset_from_fp_by_8 * 8)
        new_fp = _read(read_stack, fp_location)
        if new_fp == 0:
            return None
        if new_fp <= fp or new_sp <= sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


def rule_for_stub_functions() -> UnwindRuleAarch64:
    """The rule used inside stub functions."""
    return NoOp()


def rule_for_function_start() -> UnwindRuleAarch64:
    """The rule used at the first instruction of a function."""
    return NoOp()


def fallback_rule() -> UnwindRuleAarch64:
    """The rule used when nothing better is known."""
    return UseFramePointer()