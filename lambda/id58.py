"""Task and action ids: fixed-width base58 strings that sort by creation time."""

from __future__ import annotations

import secrets
import time

# ASCII-ordered, so fixed-width ids compare the same as the integers they encode.
ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
ID_LENGTH = 22

_MAX_ID = 1 << 128
_TS_MASK = (1 << 48) - 1
_VERSION_7 = 0x7 << 76
_VARIANT_RFC4122 = 0x2 << 62


def to_base58(value: int) -> str:
    if value < 0 or value >= _MAX_ID:
        raise ValueError("id value must fit in 128 bits")
    digits: list[str] = []
    for _ in range(ID_LENGTH):
        value, rem = divmod(value, 58)
        digits.append(ALPHABET[rem])
    return "".join(reversed(digits))


def from_base58(text: str) -> int:
    value = 0
    for ch in text:
        value = value * 58 + ALPHABET.index(ch)
    return value


def new_id(now_ms: int | None = None) -> str:
    """UUIDv7 bit layout: 48-bit ms timestamp, version, 12 random bits, variant, 62 random bits."""
    ms = int(time.time() * 1000) if now_ms is None else now_ms
    value = (
        (ms & _TS_MASK) << 80
        | _VERSION_7
        | secrets.randbits(12) << 64
        | _VARIANT_RFC4122
        | secrets.randbits(62)
    )
    return to_base58(value)


def is_task_id(value: str) -> bool:
    if not isinstance(value, str) or len(value) != ID_LENGTH:
        return False
    return all(ch in ALPHABET for ch in value)
