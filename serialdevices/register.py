"""Register descriptions, interned registers and register ranges."""

from __future__ import annotations

import math
import threading
import weakref
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, fields
from enum import Enum, IntEnum
from typing import Any

from .port import SerialDeviceError

__all__ = [
    "RegisterFormat",
    "WordOrder",
    "RegisterType",
    "RegisterConfig",
    "Register",
    "RangeStatus",
    "RegisterRange",
    "SimpleRegisterRange",
    "format_name",
    "format_from_name",
    "word_order_from_name",
]


class RegisterFormat(IntEnum):
    """How the raw register value is interpreted."""

    AUTO = 0
    U8 = 1
    S8 = 2
    U16 = 3
    S16 = 4
    S24 = 5
    U24 = 6
    U32 = 7
    S32 = 8
    S64 = 9
    U64 = 10
    BCD8 = 11
    BCD16 = 12
    BCD24 = 13
    BCD32 = 14
    FLOAT = 15
    DOUBLE = 16
    CHAR8 = 17


class WordOrder(Enum):
    """Order of 16-bit words in multi-word values."""

    BIG_ENDIAN = "big_endian"
    LITTLE_ENDIAN = "little_endian"


_DISPLAY_NAMES = {
    RegisterFormat.FLOAT: "Float",
    RegisterFormat.DOUBLE: "Double",
    RegisterFormat.CHAR8: "Char8",
}

_NAMES_TO_FORMATS = {
    "s16": RegisterFormat.S16,
    "u8": RegisterFormat.U8,
    "s8": RegisterFormat.S8,
    "u24": RegisterFormat.U24,
    "s24": RegisterFormat.S24,
    "u32": RegisterFormat.U32,
    "s32": RegisterFormat.S32,
    "s64": RegisterFormat.S64,
    "u64": RegisterFormat.U64,
    "bcd8": RegisterFormat.BCD8,
    "bcd16": RegisterFormat.BCD16,
    "bcd24": RegisterFormat.BCD24,
    "bcd32": RegisterFormat.BCD32,
    "float": RegisterFormat.FLOAT,
    "double": RegisterFormat.DOUBLE,
    "char8": RegisterFormat.CHAR8,
}

_BYTE_WIDTHS = {
    RegisterFormat.S64: 8,
    RegisterFormat.U64: 8,
    RegisterFormat.DOUBLE: 8,
    RegisterFormat.U32: 4,
    RegisterFormat.S32: 4,
    RegisterFormat.BCD32: 4,
    RegisterFormat.FLOAT: 4,
    RegisterFormat.U24: 3,
    RegisterFormat.S24: 3,
    RegisterFormat.BCD24: 3,
    RegisterFormat.CHAR8: 1,
}


def format_name(fmt: RegisterFormat | int) -> str:
    """Human readable name of a register format."""
    try:
        fmt = RegisterFormat(fmt)
    except ValueError:
        return "<unknown register type>"
    return _DISPLAY_NAMES.get(fmt, fmt.name)


def format_from_name(name: str) -> RegisterFormat:
    """Format for a configuration name such as ``"s16"``; unknown names give U16."""
    return _NAMES_TO_FORMATS.get(name, RegisterFormat.U16)


def word_order_from_name(name: str) -> WordOrder:
    """Word order for a configuration name; unknown names give big endian."""
    if name == "little_endian":
        return WordOrder.LITTLE_ENDIAN
    return WordOrder.BIG_ENDIAN


@dataclass(frozen=True)
class RegisterType:
    """A register type a protocol offers."""

    index: int
    name: str
    default_control_type: str
    default_format: RegisterFormat = RegisterFormat.U16
    read_only: bool = False
    default_word_order: WordOrder = WordOrder.BIG_ENDIAN


@dataclass(eq=False)
class RegisterConfig:
    """Description of one register.

    ``fixed_bit_width`` of 0 means the full width of ``format``;
    ``poll_interval`` is in milliseconds, negative when unset.
    """

    type: int = 0
    address: int = 0
    format: RegisterFormat = RegisterFormat.U16
    scale: float = 1.0
    offset: float = 0.0
    round_to: float = 0.0
    poll: bool = True
    read_only: bool = False
    type_name: str = ""
    has_error_value: bool = False
    error_value: int = 0
    word_order: WordOrder = WordOrder.BIG_ENDIAN
    bit_offset: int = 0
    fixed_bit_width: int = 0
    poll_interval: int = -1

    def __post_init__(self) -> None:
        if not self.type_name:
            self.type_name = f"(type {self.type})"
        if self.bit_offset >= 16:
            raise SerialDeviceError("bit offset must not exceed 16 bits")

    def byte_width(self) -> int:
        """Width of the value in bytes as the format defines it."""
        return _BYTE_WIDTHS.get(self.format, 2)

    def bit_width(self) -> int:
        """Number of value bits."""
        return self.fixed_bit_width or self.byte_width() * 8

    def width(self) -> int:
        """Number of 16-bit words the register spans."""
        return (math.ceil((self.bit_offset + self.bit_width()) / 8) + 1) // 2

    def __str__(self) -> str:
        return f"{self.type_name}: {self.address}"


_interned: dict[tuple[Any, RegisterConfig], Register] = {}
_intern_lock = threading.Lock()


class Register(RegisterConfig):
    """A register configuration bound to a device."""

    def __init__(self, device: Any, config: RegisterConfig) -> None:
        for field in fields(RegisterConfig):
            setattr(self, field.name, getattr(config, field.name))
        self._device = weakref.ref(device) if device is not None else None

    @property
    def device(self) -> Any:
        return self._device() if self._device is not None else None

    def __str__(self) -> str:
        return f"<{self.device}:{RegisterConfig.__str__(self)}>"

    @staticmethod
    def intern(device: Any, config: RegisterConfig) -> Register:
        """Return the one register for this device and configuration."""
        key = (device, config)
        with _intern_lock:
            reg = _interned.get(key)
            if reg is None:
                reg = _interned[key] = Register(device, config)
            return reg

    @staticmethod
    def clear_interned() -> None:
        """Forget all interned registers."""
        with _intern_lock:
            _interned.clear()


class RangeStatus(Enum):
    """Result of reading a register range."""

    OK = "ok"
    # response either not received or not parsed (timeout, bad CRC)
    UNKNOWN_ERROR = "unknown_error"
    # valid response in which the device reports an error
    DEVICE_ERROR = "device_error"


ValueCallback = Callable[[Register, int], None]
ErrorCallback = Callable[[Register], None]


class RegisterRange(ABC):
    """Registers of one device and type that are read together."""

    def __init__(self, regs: Register | Iterable[Register]) -> None:
        if isinstance(regs, Register):
            regs = [regs]
        self.registers: list[Register] = list(regs)
        if not self.registers:
            raise ValueError("cannot construct empty register range")
        first = self.registers[0]
        self.device = first.device
        self.type = first.type
        self.type_name = first.type_name
        self.poll_interval = first.poll_interval

    @abstractmethod
    def map_range(self, on_value: ValueCallback, on_error: ErrorCallback) -> None:
        """Report each register's value or error."""

    @abstractmethod
    def status(self) -> RangeStatus:
        """Outcome of the last read."""

    @abstractmethod
    def needs_split(self) -> bool:
        """True when the last error was likely caused by hole registers."""


class SimpleRegisterRange(RegisterRange):
    """A range whose registers are read one by one."""

    def __init__(self, regs: Register | Iterable[Register]) -> None:
        super().__init__(regs)
        self._values: dict[Register, int] = {}
        self._errors: set[Register] = set()

    def reset(self) -> None:
        self._values.clear()
        self._errors.clear()

    def set_value(self, reg: Register, value: int) -> None:
        self._values[reg] = value

    def set_error(self, reg: Register) -> None:
        self._errors.add(reg)

    def map_range(self, on_value: ValueCallback, on_error: ErrorCallback) -> None:
        for reg in self.registers:
            if reg in self._errors:
                on_error(reg)
            else:
                on_value(reg, self._values.get(reg, 0))

    def status(self) -> RangeStatus:
        if len(self._errors) == len(self.registers):
            return RangeStatus.UNKNOWN_ERROR
        return RangeStatus.OK

    def needs_split(self) -> bool:
        return False