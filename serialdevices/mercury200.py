"""Mercury 200 energy meter protocol."""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from .bcd import WordSize, pack_bytes
from .crc16 import crc16
from .device import DeviceConfig, SerialDevice
from .port import SerialDeviceError, TransientSerialError
from .register import Register, RegisterFormat, RegisterType

__all__ = ["Mercury200RegisterType", "Mercury200Device", "REGISTER_TYPES"]

_RESPONSE_BUF_LEN = 100
_HEADER_SIZE = 5


class Mercury200RegisterType(IntEnum):
    PARAM_VALUE8 = 0
    PARAM_VALUE16 = 1
    PARAM_VALUE24 = 2
    PARAM_VALUE32 = 3


REGISTER_TYPES = (
    RegisterType(Mercury200RegisterType.PARAM_VALUE16, "param8", "value", RegisterFormat.U8, True),
    RegisterType(Mercury200RegisterType.PARAM_VALUE16, "param16", "value", RegisterFormat.BCD16, True),
    RegisterType(Mercury200RegisterType.PARAM_VALUE24, "param24", "value", RegisterFormat.BCD24, True),
    RegisterType(Mercury200RegisterType.PARAM_VALUE32, "param32", "value", RegisterFormat.BCD32, True),
)

_SIZES = {
    Mercury200RegisterType.PARAM_VALUE8: (WordSize.W8, 1),
    Mercury200RegisterType.PARAM_VALUE16: (WordSize.W16, 2),
    Mercury200RegisterType.PARAM_VALUE24: (WordSize.W24, 3),
    Mercury200RegisterType.PARAM_VALUE32: (WordSize.W32, 4),
}


class Mercury200Device(SerialDevice):
    """Meter answering commands with blocks of BCD values; answers are cached per poll cycle."""

    def __init__(self, config: DeviceConfig, port: Any, protocol: Any = None) -> None:
        super().__init__(config, port, protocol)
        self._cache: dict[int, bytes] = {}

    def _request(self, cmd: int) -> bytes:
        frame = (self.slave_id & 0xFFFFFFFF).to_bytes(4, "big") + bytes([cmd])
        return frame + crc16(frame).to_bytes(2, "big")

    def _exec_command(self, cmd: int) -> bytes:
        cached = self._cache.get(cmd)
        if cached is not None:
            return cached

        self.port.write_bytes(self._request(cmd))
        response = bytes(
            self.port.read_frame(_RESPONSE_BUF_LEN, self.config.frame_timeout)
        )
        if len(response) < 4:
            raise TransientSerialError("mercury200: read frame too short for command response")
        header = response.ljust(_HEADER_SIZE, b"\0")
        slave = int.from_bytes(header[:4], "big")
        if slave != self.slave_id & 0xFFFFFFFF or header[4] != cmd:
            raise TransientSerialError("mercury200: bad response header for command")
        # the CRC over a frame that ends with its own CRC is zero
        if crc16(response) != 0:
            raise TransientSerialError("mercury200: bad CRC for command")

        result = response[_HEADER_SIZE:]
        self._cache[cmd] = result
        return result

    def read_register(self, reg: Register) -> int:
        cmd = (reg.address >> 8) & 0xFF
        offset = reg.address & 0xFF
        try:
            size, width = _SIZES[Mercury200RegisterType(reg.type)]
        except ValueError:
            raise SerialDeviceError("mercury200: invalid register type") from None

        result = self._exec_command(cmd)
        if len(result) < offset + width:
            raise SerialDeviceError("mercury200: register address is out of range")
        return pack_bytes(result[offset:offset + width], size)

    def write_register(self, reg: Register, value: int) -> None:
        raise SerialDeviceError("mercury200: register writing is not supported")

    def end_poll_cycle(self) -> None:
        self._cache.clear()
        super().end_poll_cycle()