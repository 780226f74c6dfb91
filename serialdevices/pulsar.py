"""Pulsar heat/water meter protocol."""

from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum
from typing import Any

from .device import DeviceConfig, SerialDevice
from .port import SerialDeviceError, TransientSerialError
from .register import Register, RegisterFormat, RegisterType

__all__ = ["PulsarRegisterType", "PulsarDevice", "pulsar_crc16", "REGISTER_TYPES"]

_FRAME_TIMEOUT = 0.3


class PulsarRegisterType(IntEnum):
    DEFAULT = 0
    SYSTIME = 1


REGISTER_TYPES = (
    RegisterType(PulsarRegisterType.DEFAULT, "default", "value", RegisterFormat.DOUBLE, True),
    RegisterType(PulsarRegisterType.SYSTIME, "systime", "value", RegisterFormat.U64, True),
)


def pulsar_crc16(data: bytes | bytearray) -> int:
    """CRC-16 (polynomial 0xA001, initial 0xFFFF), sent least significant byte first."""
    crc = 0xFFFF
    for byte in bytes(data):
        crc ^= byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
    return crc


def _write_bcd(value: int, size: int, big_endian: bool = True) -> bytes:
    out = bytearray()
    for _ in range(size):
        low = value % 10
        value //= 10
        out.append(low | ((value % 10) << 4))
        value //= 10
    return bytes(reversed(out)) if big_endian else bytes(out)


def _write_hex(value: int, size: int, big_endian: bool = True) -> bytes:
    return (value & ((1 << (8 * size)) - 1)).to_bytes(size, "big" if big_endian else "little")


def _read_bcd(data: bytes, big_endian: bool = True) -> int:
    result = 0
    for byte in data if big_endian else reversed(data):
        result = result * 100 + (byte & 0x0F) + 10 * ((byte >> 4) & 0x0F)
    return result


def _read_hex(data: bytes, big_endian: bool = True) -> int:
    return int.from_bytes(data, "big" if big_endian else "little")


def _frame_complete(buf: Sequence[int], size: int | None = None) -> bool:
    if size is None:
        size = len(buf)
    return size >= 6 and size == buf[5]


class PulsarDevice(SerialDevice):
    """Read-only meter; every request carries an incrementing request id."""

    def __init__(self, config: DeviceConfig, port: Any, protocol: Any = None) -> None:
        super().__init__(config, port, protocol)
        self.request_id = 0

    def _send(self, body: bytes) -> None:
        self.port.write_bytes(body + _write_hex(pulsar_crc16(body), 2, False))

    def _write_data_request(self, addr: int, mask: int, request_id: int) -> None:
        self.port.check_port_open()
        body = (
            _write_bcd(addr, 4, True)
            + bytes([1, 14])
            + _write_hex(mask, 4, False)
            + _write_hex(request_id, 2, False)
        )
        self._send(body)

    def _write_systime_request(self, addr: int, request_id: int) -> None:
        self.port.check_port_open()
        body = _write_bcd(addr, 4, True) + bytes([1, 10]) + _write_hex(request_id, 2, False)
        self._send(body)

    def _read_response(self, addr: int, size: int, request_id: int) -> bytes:
        expected = size + 10  # payload plus service bytes
        response = bytes(self.port.read_frame(expected, _FRAME_TIMEOUT, _frame_complete))
        if len(response) < 6:
            raise TransientSerialError("frame is too short")
        if len(response) != expected:
            raise TransientSerialError("unexpected end of frame")
        if response[5] != expected:
            raise TransientSerialError("unexpected frame length")
        if _read_hex(response[-2:], False) != pulsar_crc16(response[:-2]):
            raise TransientSerialError("CRC mismatch")
        if _read_bcd(response[:4], True) != addr & 0xFFFFFFFF:
            raise TransientSerialError("slave address mismatch")
        if _read_hex(response[-4:-2], False) != request_id:
            raise TransientSerialError("request ID mismatch")
        return response[6:6 + size]

    def _next_request_id(self) -> None:
        self.request_id = (self.request_id + 1) & 0xFFFF

    def _read_data_register(self, reg: Register) -> int:
        width = reg.byte_width()
        mask = (1 << reg.address) & 0xFFFFFFFF
        self._write_data_request(self.slave_id, mask, self.request_id)
        payload = self._read_response(self.slave_id, width, self.request_id)
        self._next_request_id()
        return _read_hex(payload, False)

    def _read_systime_register(self) -> int:
        self._write_systime_request(self.slave_id, self.request_id)
        payload = self._read_response(self.slave_id, 6, self.request_id)
        self._next_request_id()
        return _read_hex(payload, False)

    def read_register(self, reg: Register) -> int:
        self.port.skip_noise()
        if reg.type == PulsarRegisterType.DEFAULT:
            return self._read_data_register(reg)
        if reg.type == PulsarRegisterType.SYSTIME:
            return self._read_systime_register()
        raise SerialDeviceError("Pulsar protocol: wrong register type")

    def write_register(self, reg: Register, value: int) -> None:
        raise SerialDeviceError("Pulsar protocol: writing to registers is not supported")