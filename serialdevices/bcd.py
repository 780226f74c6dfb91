"""Packed BCD helpers for meters that transfer decimal values nibble by nibble."""

from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum

__all__ = [
    "WordSize",
    "pack_bytes",
    "packed_bcd_to_int",
    "int_to_bcd_bytes",
    "int_to_packed_bcd",
]

_U32_MASK = 0xFFFFFFFF


class WordSize(IntEnum):
    """Width of a BCD word in bytes."""

    W8 = 1
    W16 = 2
    W24 = 3
    W32 = 4


def pack_bytes(data: Sequence[int] | bytes, size: WordSize | int) -> int:
    """Read the first ``size`` bytes as a big-endian integer.

    ``[0x12, 0x34, 0x56, 0x78]`` becomes ``0x12345678``, so the hexadecimal
    form of the result reads the same as the original byte sequence.
    """
    width = int(WordSize(size))
    if len(data) < width:
        raise ValueError(f"need {width} bytes, got {len(data)}")
    return int.from_bytes(bytes(data[:width]), "big")


def packed_bcd_to_int(packed: int, size: WordSize | int) -> int:
    """Decode a packed BCD value (as produced by :func:`pack_bytes`) to an int."""
    width = int(WordSize(size))
    result = 0
    scale = 1
    for shift in range(0, width * 8, 8):
        byte = (packed >> shift) & 0xFF
        result += (byte & 0x0F) * scale
        result += (byte >> 4) * scale * 10
        scale *= 100
    return result & _U32_MASK


def int_to_bcd_bytes(value: int, size: WordSize | int) -> bytes:
    """Encode the lowest ``2 * size`` decimal digits of ``value`` as BCD bytes,
    most significant byte first."""
    width = int(WordSize(size))
    if value < 0:
        raise ValueError("BCD value must not be negative")
    out = bytearray(width)
    for pos in reversed(range(width)):
        low = value % 10
        value //= 10
        high = value % 10
        value //= 10
        out[pos] = (high << 4) | low
    return bytes(out)


def int_to_packed_bcd(value: int, size: WordSize | int) -> int:
    """Encode ``value`` as BCD and pack it into a single integer."""
    return pack_bytes(int_to_bcd_bytes(value & _U32_MASK, size), size)