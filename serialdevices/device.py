"""Base serial device and its configuration."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .port import PermanentRegisterError, SerialDeviceError, TransientSerialError
from .register import Register, RegisterRange, SimpleRegisterRange

__all__ = ["DeviceConfig", "SerialDevice"]


@dataclass
class DeviceConfig:
    """Settings of one device on a bus.

    Times are in seconds; a negative ``frame_timeout`` selects the protocol
    default. ``max_read_registers`` of 0 selects the protocol maximum.
    """

    name: str
    slave_id: str
    protocol: str = ""
    frame_timeout: float = -1.0
    guard_interval: float = 0.0
    max_reg_hole: int = 0
    max_bit_hole: int = 0
    max_read_registers: int = 0
    access_level: int = 1
    password: bytes = b""
    stride: int = 0
    shift: int = 0


class SerialDevice(ABC):
    """A device reached through a port."""

    def __init__(self, config: DeviceConfig, port: Any, protocol: Any = None) -> None:
        self.config = config
        self.port = port
        self.protocol = protocol
        self.slave_id = self._parse_slave_id(config.slave_id)
        # keyed by (register type, address); values are 16-bit words
        self.modbus_cache: dict[tuple[int, int], int] = {}
        self.modbus_tmp_cache: dict[tuple[int, int], int] = {}

    def _parse_slave_id(self, text: str | int) -> Any:
        if isinstance(text, int):
            return text
        try:
            return int(text, 0)
        except ValueError:
            try:
                return int(text, 10)
            except ValueError:
                raise SerialDeviceError(f"invalid slave id: {text!r}") from None

    def __str__(self) -> str:
        return f"{self.config.name}:{self.config.slave_id}"

    @abstractmethod
    def read_register(self, reg: Register) -> int:
        """Read one register's raw value."""

    @abstractmethod
    def write_register(self, reg: Register, value: int) -> None:
        """Write one register's raw value."""

    def read_register_range(self, range_: RegisterRange) -> None:
        """Read every register of a simple range, recording values and errors."""
        if not isinstance(range_, SimpleRegisterRange):
            raise TypeError("simple register range expected")
        range_.reset()
        for reg in range_.registers:
            try:
                range_.set_value(reg, self.read_register(reg))
            except (TransientSerialError, PermanentRegisterError):
                range_.set_error(reg)

    def split_register_list(
        self, regs: Iterable[Register], enable_holes: bool = True
    ) -> list[RegisterRange]:
        """Group registers into ranges; by default each register is its own range."""
        return [SimpleRegisterRange(reg) for reg in regs]

    def prepare(self) -> None:
        """Hook run before the device is polled."""

    def end_poll_cycle(self) -> None:
        """Hook run after all of the device's registers were polled."""

    def dismiss_tmp_cache(self) -> None:
        """Drop words staged for a write that did not complete."""
        self.modbus_tmp_cache.clear()

    def apply_tmp_cache(self) -> None:
        """Commit words staged for a completed write."""
        self.modbus_cache.update(self.modbus_tmp_cache)
        self.modbus_tmp_cache.clear()