"""Register state used for unwinding on Aarch64."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["PtrAuthMask", "UnwindRegsAarch64"]

_U64_MAX = (1 << 64) - 1


@dataclass(frozen=True, order=True)
class PtrAuthMask:
    """Mask that strips pointer-authentication hash bits from code pointers.

    Bits set in ``mask`` are address bits; cleared bits hold the hash.
    """

    mask: int

    def __post_init__(self) -> None:
        if not 0 <= self.mask <= _U64_MAX:
            raise ValueError(f"mask {self.mask:#x} is not a 64-bit value")

    @classmethod
    def new_no_strip(cls) -> PtrAuthMask:
        """A mask that keeps every bit."""
        return cls(_U64_MAX)

    @classmethod
    def new_24_40(cls) -> PtrAuthMask:
        """A mask for 24 hash bits above 40 address bits, as on macOS arm64e."""
        return cls(_U64_MAX >> 24)

    @classmethod
    def from_max_known_address(cls, address: int) -> PtrAuthMask:
        """Reserve the leading zero bits of ``address`` for the hash."""
        if not 0 < address <= _U64_MAX:
            raise ValueError(f"address {address:#x} must be a non-zero 64-bit value")
        return cls((1 << address.bit_length()) - 1)

    def strip_ptr_auth(self, ptr: int) -> int:
        """Apply the mask to ``ptr``."""
        return ptr & self.mask


class UnwindRegsAarch64:
    """The lr (x30), sp and fp (x29) registers, plus the mask applied to lr."""

    __slots__ = ("_lr_mask", "_lr", "sp", "fp")

    def __init__(
        self,
        lr: int,
        sp: int,
        fp: int,
        lr_mask: PtrAuthMask | None = None,
    ) -> None:
        self._lr_mask = lr_mask if lr_mask is not None else PtrAuthMask.new_no_strip()
        self._lr = self._lr_mask.strip_ptr_auth(lr)
        self.sp = sp
        self.fp = fp

    @classmethod
    def with_ptr_auth_mask(
        cls, code_ptr_auth_mask: PtrAuthMask, lr: int, sp: int, fp: int
    ) -> UnwindRegsAarch64:
        """Create registers whose lr values are stripped with the given mask."""
        return cls(lr, sp, fp, code_ptr_auth_mask)

    @property
    def lr_mask(self) -> PtrAuthMask:
        """The mask applied to every lr value."""
        return self._lr_mask

    @property
    def lr(self) -> int:
        """The link register value."""
        return self._lr

    @lr.setter
    def lr(self, value: int) -> None:
        self._lr = self._lr_mask.strip_ptr_auth(value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnwindRegsAarch64):
            return NotImplemented
        return (self._lr_mask, self._lr, self.sp, self.fp) == (
            other._lr_mask,
            other._lr,
            other.sp,
            other.fp,
        )

    __hash__ = None  # type: ignore[assignment]

    def __copy__(self) -> UnwindRegsAarch64:
        clone = UnwindRegsAarch64.__new__(UnwindRegsAarch64)
        clone._lr_mask = self._lr_mask
        clone._lr = self._lr
        clone.sp = self.sp
        clone.fp = self.fp
        return clone

    def __repr__(self) -> str:
        return f"UnwindRegsAarch64(lr={self._lr:#x}, sp={self.sp:#x}, fp={self.fp:#x})"