"""IVTM humidity/temperature meter protocol (ASCII hex frames)."""

from __future__ import annotations

import re
from collections.abc import Sequence

from .device import SerialDevice
from .port import SerialDeviceError, TransientSerialError
from .register import Register, RegisterFormat, RegisterType

__all__ = ["IVTMDevice", "REGISTER_TYPES"]

_MAX_LEN = 100
_FRAME_TIMEOUT = 0.05
_HEX_PAIR = re.compile(rb"[0-9A-Fa-f]{2}")

REGISTER_TYPES = (RegisterType(0, "default", "value", RegisterFormat.FLOAT, True),)


def _frame_complete(buf: Sequence[int], size: int | None = None) -> bool:
    if size is None:
        size = len(buf)
    return size > 0 and buf[size - 1] == 0x0D


def _checksum(data: bytes) -> int:
    return sum(data) & 0xFF


def _decode_byte(text: bytes) -> int:
    if not _HEX_PAIR.fullmatch(text):
        raise TransientSerialError(f"invalid hex digits in response: {text!r}")
    return int(text, 16)


def _decode_bytes(text: bytes, count: int) -> bytes:
    return bytes(_decode_byte(text[2 * i:2 * i + 2]) for i in range(count))


def _decode_word(text: bytes) -> int:
    high, low = _decode_bytes(text, 2)
    return (high << 8) | low


class IVTMDevice(SerialDevice):
    """Read-only meter answering register reads with hex-encoded data."""

    def _write_command(self, addr: int, data_addr: int, data_len: int) -> None:
        self.port.check_port_open()
        addr &= 0xFFFF
        data_addr &= 0xFFFF
        body = b"$%02X%02XRR%02X%02X%02X" % (
            addr >> 8,
            addr & 0xFF,
            data_addr >> 8,
            data_addr & 0xFF,
            data_len & 0xFF,
        )
        self.port.write_bytes(body + b"%02X\r" % _checksum(body))

    def _read_response(self, addr: int, length: int) -> bytes:
        frame = bytes(self.port.read_frame(_MAX_LEN, _FRAME_TIMEOUT, _frame_complete))
        if len(frame) < 10:
            raise TransientSerialError("frame too short")
        if frame[0] != ord("!") or frame[5] != ord("R") or frame[6] != ord("R"):
            raise TransientSerialError("invalid response header")
        if frame[-1] != 0x0D:
            raise TransientSerialError("invalid response footer")
        if _decode_word(frame[1:5]) != addr & 0xFFFF:
            raise TransientSerialError("invalid slave addr in response")
        if _checksum(frame[:-3]) != _decode_byte(frame[-3:-1]):
            raise TransientSerialError("invalid crc")
        payload_chars = len(frame) - 10
        if length * 2 != payload_chars:
            raise TransientSerialError("unexpected frame size")
        return _decode_bytes(frame[7:7 + payload_chars], length)

    def read_register(self, reg: Register) -> int:
        self.port.skip_noise()
        width = reg.byte_width()
        self._write_command(self.slave_id, reg.address, width)
        payload = self._read_response(self.slave_id, width)
        # the device sends the value least significant byte first
        return int.from_bytes(payload[:4].ljust(4, b"\0"), "little")

    def write_register(self, reg: Register, value: int) -> None:
        raise SerialDeviceError("IVTM protocol: writing register is not supported")