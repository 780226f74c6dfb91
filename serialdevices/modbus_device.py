"""Modbus RTU devices and Modbus extension modules behind a master device."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from . import modbus_rtu
from .device import DeviceConfig, SerialDevice
from .modbus import ModbusRegisterRange, ModbusRegisterType, split_register_list
from .port import SerialDeviceError
from .register import Register, RegisterFormat, RegisterRange, RegisterType

__all__ = [
    "AggregatedSlaveId",
    "ModbusDevice",
    "ModbusIODevice",
    "REGISTER_TYPES",
    "IO_REGISTER_TYPES",
]

REGISTER_TYPES = (
    RegisterType(ModbusRegisterType.COIL, "coil", "switch", RegisterFormat.U8),
    RegisterType(ModbusRegisterType.DISCRETE, "discrete", "switch", RegisterFormat.U8, True),
    RegisterType(ModbusRegisterType.HOLDING, "holding", "text", RegisterFormat.U16),
    RegisterType(ModbusRegisterType.HOLDING_SINGLE, "holding_single", "text", RegisterFormat.U16),
    RegisterType(ModbusRegisterType.HOLDING_MULTI, "holding_multi", "text", RegisterFormat.U16),
    RegisterType(ModbusRegisterType.INPUT, "input", "text", RegisterFormat.U16, True),
)

IO_REGISTER_TYPES = (
    RegisterType(ModbusRegisterType.COIL, "coil", "switch", RegisterFormat.U8),
    RegisterType(ModbusRegisterType.DISCRETE, "discrete", "switch", RegisterFormat.U8, True),
    RegisterType(ModbusRegisterType.HOLDING, "holding", "text", RegisterFormat.U16),
    RegisterType(ModbusRegisterType.INPUT, "input", "text", RegisterFormat.U16, True),
)


class ModbusDevice(SerialDevice):
    """A Modbus RTU slave; registers are read in ranges."""

    def split_register_list(
        self, regs: Iterable[Register], enable_holes: bool = True
    ) -> list[ModbusRegisterRange]:
        return split_register_list(regs, self.config, enable_holes)

    def read_register(self, reg: Register) -> int:
        raise SerialDeviceError("modbus: single register reading is not supported")

    def write_register(self, reg: Register, value: int) -> None:
        modbus_rtu.write_register(self.port, self.slave_id, reg, value)

    def read_register_range(self, range_: RegisterRange) -> None:
        modbus_rtu.read_register_range(self.port, self.slave_id, range_)


@dataclass(frozen=True)
class AggregatedSlaveId:
    """Slave id of the master device and index of the module behind it."""

    primary: int
    secondary: int


def _parse_int(text: str) -> int:
    text = text.strip()
    try:
        return int(text, 0)
    except ValueError:
        try:
            return int(text, 10)
        except ValueError:
            raise SerialDeviceError(f"invalid slave id: {text!r}") from None


def _trunc_mod(a: int, b: int) -> int:
    """Remainder with the sign of the dividend."""
    r = abs(a) % abs(b)
    return -r if a < 0 else r


class ModbusIODevice(SerialDevice):
    """An extension module whose registers are mapped into its master's address space."""

    def __init__(self, config: DeviceConfig, port: Any, protocol: Any = None) -> None:
        super().__init__(config, port, protocol)
        module = _trunc_mod(self.slave_id.secondary - 1, 4) + 1
        self.shift = module * config.stride + config.shift

    def _parse_slave_id(self, text: Any) -> AggregatedSlaveId:
        if isinstance(text, AggregatedSlaveId):
            return text
        if isinstance(text, tuple) and len(text) == 2:
            return AggregatedSlaveId(int(text[0]), int(text[1]))
        if isinstance(text, str) and ":" in text:
            primary, _, secondary = text.partition(":")
            return AggregatedSlaveId(_parse_int(primary), _parse_int(secondary))
        raise SerialDeviceError(f"invalid aggregated slave id: {text!r}")

    def split_register_list(
        self, regs: Iterable[Register], enable_holes: bool = True
    ) -> list[ModbusRegisterRange]:
        return split_register_list(regs, self.config, enable_holes)

    def read_register(self, reg: Register) -> int:
        raise SerialDeviceError(
            "modbus extension module: single register reading is not supported"
        )

    def write_register(self, reg: Register, value: int) -> None:
        modbus_rtu.write_register(self.port, self.slave_id.primary, reg, value, self.shift)

    def read_register_range(self, range_: RegisterRange) -> None:
        modbus_rtu.read_register_range(self.port, self.slave_id.primary, range_, self.shift)