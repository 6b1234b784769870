"""
Hashing utilities.

- keccak256 hashing
- event topic derivation and indexed-argument topic encoding
- deterministic cache-key derivation
"""

from __future__ import annotations

import struct
from typing import Union

from Crypto.Hash import keccak as _keccak_mod
from eth_utils import decode_hex, encode_hex


def keccak256(data: bytes) -> bytes:
    """Compute Keccak-256 hash (NOT SHA3-256)."""
    h = _keccak_mod.new(digest_bits=256)
    h.update(data)
    return h.digest()


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

def event_topic(signature: str) -> bytes:
    """topic0 for an event signature such as ``Transfer(address,address,uint256)``."""
    return keccak256(signature.replace(" ", "").encode())


def encode_topic_value(value: Union[int, str, bytes]) -> str:
    """Left-pad an indexed argument to a 32-byte topic, returned as 0x-hex."""
    if isinstance(value, bool):
        raw = b"\x01" if value else b"\x00"
    elif isinstance(value, int):
        if value < 0:
            value += 1 << 256
        raw = value.to_bytes(32, "big")
    elif isinstance(value, str):
        raw = decode_hex(value)
    else:
        raw = bytes(value)
    if len(raw) > 32:
        raise ValueError(f"topic value longer than 32 bytes: {len(raw)}")
    return encode_hex(raw.rjust(32, b"\x00"))


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------

def cache_key_prefix(chain_id: int, filter_signature: str) -> bytes:
    """32-byte prefix shared by every cached result of one (chain, filter) pair."""
    return keccak256(struct.pack(">Q", chain_id) + filter_signature.encode())


def cache_key(chain_id: int, filter_signature: str, from_block: int) -> bytes:
    return cache_key_prefix(chain_id, filter_signature) + from_block.to_bytes(32, "big")
