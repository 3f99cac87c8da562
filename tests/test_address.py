from __future__ import annotations

import base58
import pytest

from tbw.crypto.address import address_version, decode_address, encode_address, is_valid_address


def test_encode_and_validate_for_network_version() -> None:
    addr = encode_address(b"\x11" * 20, 23)
    assert address_version(addr) == 23
    assert is_valid_address(addr, 23)
    assert not is_valid_address(addr, 30)


def test_rejects_bad_checksum_and_length() -> None:
    addr = encode_address(b"\x11" * 20, 23)
    tampered = addr[:-1] + ("1" if addr[-1] != "1" else "2")
    assert not is_valid_address(tampered, 23)

    short = base58.b58encode_check(b"\x17" + b"\x00" * 10).decode("ascii")
    with pytest.raises(ValueError):
        decode_address(short)


def test_rejects_non_strings() -> None:
    assert not is_valid_address(None, 23)
    assert not is_valid_address("", 23)
    with pytest.raises(ValueError):
        encode_address(b"\x00" * 19, 23)
