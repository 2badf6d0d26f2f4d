import pytest

from framehop.code_address import FrameAddress, FrameAddressKind


def test_instruction_pointer_lookup_is_raw_address():
    addr = FrameAddress.from_instruction_pointer(0x1003fc000 + 0x1292C0)
    assert addr.address == 0x1003fc000 + 0x1292C0
    assert addr.address_for_lookup() == addr.address
    assert addr.is_return_address() is False


def test_return_address_lookup_subtracts_one():
    addr = FrameAddress.from_return_address(0x1003fc000 + 0xE4830)
    assert addr.is_return_address() is True
    assert addr.address == 0x1003fc000 + 0xE4830
    assert addr.address_for_lookup() == addr.address - 1


def test_zero_return_address_is_none():
    assert FrameAddress.from_return_address(0) is None


def test_zero_instruction_pointer_allowed():
    addr = FrameAddress.from_instruction_pointer(0)
    assert addr.address_for_lookup() == 0


def test_direct_zero_return_address_rejected():
    with pytest.raises(ValueError):
        FrameAddress(0, FrameAddressKind.RETURN_ADDRESS)


def test_negative_address_rejected():
    with pytest.raises(ValueError):
        FrameAddress.from_instruction_pointer(-1)


def test_equality_distinguishes_kind():
    ip = FrameAddress.from_instruction_pointer(0x1234)
    ra = FrameAddress.from_return_address(0x1234)
    assert ip == FrameAddress.from_instruction_pointer(0x1234)
    assert ra == FrameAddress.from_return_address(0x1234)
    assert (ip == ra) is False
    assert ip.address == ra.address