"""Addition of a signed offset to an unsigned machine integer."""

from __future__ import annotations

__all__ = ["wrapping_add_signed", "checked_add_signed"]


def _check_operands(lhs: int, rhs: int, bits: int) -> None:
    if bits <= 0:
        raise ValueError(f"bit width must be positive, got {bits}")
    if not 0 <= lhs < (1 << bits):
        raise ValueError(f"{lhs:#x} is not an unsigned {bits}-bit integer")
    half = 1 << (bits - 1)
    if not -half <= rhs < half:
        raise ValueError(f"{rhs} is not a signed {bits}-bit integer")


def wrapping_add_signed(lhs: int, rhs: int, bits: int = 64) -> int:
    """Add signed ``rhs`` to unsigned ``lhs``, wrapping around at ``2**bits``."""
    _check_operands(lhs, rhs, bits)
    return (lhs + rhs) & ((1 << bits) - 1)


def checked_add_signed(lhs: int, rhs: int, bits: int = 64) -> int | None:
    """Add signed ``rhs`` to unsigned ``lhs``; return None on underflow or overflow."""
    _check_operands(lhs, rhs, bits)
    result = lhs + rhs
    if 0 <= result < (1 << bits):
        return result
    return None