# src/tbw/crypto/address.py
from __future__ import annotations

"""Address format checks.

Addresses are base58check(version_byte || ripemd160(public_key)): 21 payload
bytes plus a 4-byte double-SHA256 checksum.
"""

from typing import Any

import base58

ADDRESS_PAYLOAD_LEN = 21


def decode_address(address: Any) -> bytes:
    """Return the 21-byte payload or raise ValueError."""
    if not isinstance(address, str) or not address.strip():
        raise ValueError("address must be a non-empty string")
    try:
        payload = base58.b58decode_check(address.strip())
    except ValueError as e:
        raise ValueError(f"bad address checksum: {address!r}") from e
    if len(payload) != ADDRESS_PAYLOAD_LEN:
        raise ValueError(f"bad address length: {address!r}")
    return payload


def address_version(address: str) -> int:
    return decode_address(address)[0]


def is_valid_address(address: Any, network_version: int) -> bool:
    try:
        return decode_address(address)[0] == int(network_version)
    except ValueError:
        return False


def encode_address(pubkey_hash: bytes, network_version: int) -> str:
    """Build an address from a 20-byte public key hash (fixtures, tooling)."""
    if len(pubkey_hash) != ADDRESS_PAYLOAD_LEN - 1:
        raise ValueError("pubkey hash must be 20 bytes")
    return base58.b58encode_check(bytes([int(network_version)]) + pubkey_hash).decode("ascii")
