"""LLS fuel level sensor protocol."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .device import DeviceConfig, SerialDevice
from .port import SerialDeviceError, TransientSerialError
from .register import Register, RegisterFormat, RegisterType

__all__ = ["LLSDevice", "dallas_crc8", "REGISTER_TYPES"]

_RESPONSE_BUF_LEN = 100
_HEADER_SIZE = 3
_REQUEST_PREFIX = 0x31
_RESPONSE_PREFIX = 0x3E

REGISTER_TYPES = (RegisterType(0, "default", "value", RegisterFormat.FLOAT, True),)


def dallas_crc8(data: Iterable[int]) -> int:
    """Dallas/Maxim 1-Wire CRC-8."""
    crc = 0
    for byte in data:
        for _ in range(8):
            mix = (crc ^ byte) & 0x01
            crc >>= 1
            if mix:
                crc ^= 0x8C
            byte >>= 1
    return crc


class LLSDevice(SerialDevice):
    """Sensor answering commands with a block of values; answers are cached per poll cycle."""

    def __init__(self, config: DeviceConfig, port: Any, protocol: Any = None) -> None:
        super().__init__(config, port, protocol)
        self._cache: dict[int, bytes] = {}

    def end_poll_cycle(self) -> None:
        self._cache.clear()
        super().end_poll_cycle()

    def _exec_command(self, cmd: int) -> bytes:
        cached = self._cache.get(cmd)
        if cached is not None:
            return cached

        slave = self.slave_id & 0xFF
        request = bytes([_REQUEST_PREFIX, slave, cmd])
        self.port.write_bytes(request + bytes([dallas_crc8(request)]))

        response = self.port.read_frame(_RESPONSE_BUF_LEN, self.config.frame_timeout)
        if len(response) < _HEADER_SIZE + 1:
            raise TransientSerialError("frame too short")
        if response[0] != _RESPONSE_PREFIX:
            raise TransientSerialError("invalid response prefix")
        if response[1] != slave:
            raise TransientSerialError("invalid response network address")
        if response[2] != cmd:
            raise TransientSerialError("invalid response cmd")
        if response[-1] != dallas_crc8(response[:-1]):
            raise TransientSerialError("invalid response crc")

        result = response[_HEADER_SIZE:]
        self._cache[cmd] = result
        return result

    def read_register(self, reg: Register) -> int:
        self.port.skip_noise()
        self.port.check_port_open()

        cmd = (reg.address >> 8) & 0xFF
        offset = reg.address & 0xFF
        result = self._exec_command(cmd)

        width = reg.byte_width()
        if offset + width > len(result):
            raise SerialDeviceError("LLS protocol: register address is out of range")
        value = bytes(result[offset:offset + width]).ljust(4, b"\0")
        return int.from_bytes(value[:4], "little")

    def write_register(self, reg: Register, value: int) -> None:
        raise SerialDeviceError("LLS protocol: writing register is not supported")