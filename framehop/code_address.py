"""Code addresses of stack frames."""

from __future__ import annotations

import enum
from dataclasses import dataclass

__all__ = ["FrameAddress", "FrameAddressKind"]


class FrameAddressKind(enum.Enum):
    """Where a frame address came from."""

    INSTRUCTION_POINTER = "instruction_pointer"
    RETURN_ADDRESS = "return_address"


@dataclass(frozen=True)
class FrameAddress:
    """An absolute code address (AVMA) of a stack frame.

    Either the instruction pointer, where unwinding starts, or a return
    address, i.e. the address of the instruction after a call.
    """

    address: int
    kind: FrameAddressKind = FrameAddressKind.INSTRUCTION_POINTER

    def __post_init__(self) -> None:
        if self.address < 0:
            raise ValueError(f"address must not be negative: {self.address}")
        if self.kind is FrameAddressKind.RETURN_ADDRESS and self.address == 0:
            raise ValueError("a return address cannot be zero")

    @classmethod
    def from_instruction_pointer(cls, ip: int) -> FrameAddress:
        """Create an instruction-pointer frame address."""
        return cls(ip, FrameAddressKind.INSTRUCTION_POINTER)

    @classmethod
    def from_return_address(cls, return_address: int) -> FrameAddress | None:
        """Create a return-address frame address, or None if the address is zero."""
        if return_address == 0:
            return None
        return cls(return_address, FrameAddressKind.RETURN_ADDRESS)

    def address_for_lookup(self) -> int:
        """The address to use for unwind or debug info lookup.

        For return addresses this is one byte less, so that it points into
        the call instruction rather than past it.
        """
        if self.kind is FrameAddressKind.RETURN_ADDRESS:
            return self.address - 1
        return self.address

    def is_return_address(self) -> bool:
        """Whether this address is a return address."""
        return self.kind is FrameAddressKind.RETURN_ADDRESS