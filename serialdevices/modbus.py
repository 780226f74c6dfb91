"""Modbus protocol data units: register ranges, requests and responses."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from enum import Enum, IntEnum
from typing import Any

from .port import SerialDeviceError, TransientSerialError
from .register import (
    ErrorCallback,
    RangeStatus,
    Register,
    RegisterRange,
    ValueCallback,
)

__all__ = [
    "ModbusRegisterType",
    "ModbusErrorCode",
    "ModbusRegisterRange",
    "MAX_READ_BITS",
    "MAX_READ_REGISTERS",
    "EXCEPTION_RESPONSE_PDU_SIZE",
    "WRITE_RESPONSE_PDU_SIZE",
    "is_single_bit_type",
    "is_packing",
    "is_exception",
    "exception_code",
    "raise_for_exception_code",
    "infer_write_request_pdu_size",
    "infer_write_requests_count",
    "infer_read_response_pdu_size",
    "read_response_pdu_size",
    "write_response_pdu_size",
    "compose_read_request_pdu",
    "compose_single_write_request_pdu",
    "compose_multiple_write_request_pdu",
    "parse_read_response",
    "parse_write_response",
    "split_register_list",
    "frame_timeout_for_baud",
]

logger = logging.getLogger(__name__)

MAX_READ_BITS = 2000
MAX_WRITE_BITS = 1968
MAX_READ_REGISTERS = 125
MAX_WRITE_REGISTERS = 123
MAX_RW_WRITE_REGISTERS = 121

EXCEPTION_RESPONSE_PDU_SIZE = 2
WRITE_RESPONSE_PDU_SIZE = 5

_EXCEPTION_BIT = 0x80

_FN_READ_COILS = 0x01
_FN_READ_DISCRETE = 0x02
_FN_READ_HOLDING = 0x03
_FN_READ_INPUT = 0x04
_FN_WRITE_SINGLE_COIL = 0x05
_FN_WRITE_SINGLE_REGISTER = 0x06
_FN_WRITE_MULTIPLE_COILS = 0x0F
_FN_WRITE_MULTIPLE_REGISTERS = 0x10


class ModbusRegisterType(IntEnum):
    """Modbus register tables."""

    HOLDING = 0
    INPUT = 1
    COIL = 2
    DISCRETE = 3
    HOLDING_SINGLE = 4
    HOLDING_MULTI = 5


class ModbusErrorCode(IntEnum):
    """Exception codes a Modbus server may report."""

    NONE = 0x0
    ILLEGAL_FUNCTION = 0x1
    ILLEGAL_DATA_ADDRESS = 0x2
    ILLEGAL_DATA_VALUE = 0x3
    SERVER_DEVICE_FAILURE = 0x4
    ACKNOWLEDGE = 0x5
    SERVER_DEVICE_BUSY = 0x6
    MEMORY_PARITY_ERROR = 0x8
    GATEWAY_PATH_UNAVAILABLE = 0xA
    GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND = 0xB


_ERROR_MESSAGES = {
    ModbusErrorCode.ILLEGAL_FUNCTION: "illegal function",
    ModbusErrorCode.ILLEGAL_DATA_ADDRESS: "illegal data address",
    ModbusErrorCode.ILLEGAL_DATA_VALUE: "illegal data value",
    ModbusErrorCode.SERVER_DEVICE_FAILURE: "server device failure",
    ModbusErrorCode.ACKNOWLEDGE: "long operation (acknowledge)",
    ModbusErrorCode.SERVER_DEVICE_BUSY: "server device is busy",
    ModbusErrorCode.MEMORY_PARITY_ERROR: "memory parity error",
    ModbusErrorCode.GATEWAY_PATH_UNAVAILABLE: "gateway path is unavailable",
    ModbusErrorCode.GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND: "gateway target device failed to respond",
}


class _Operation(Enum):
    READ = "read"
    WRITE = "write"


def _mersenne(bit_count: int) -> int:
    return (1 << bit_count) - 1


def _u16(value: int) -> bytes:
    return (value & 0xFFFF).to_bytes(2, "big")


def is_single_bit_type(reg_type: int) -> bool:
    """True for coils and discrete inputs."""
    return reg_type in (ModbusRegisterType.COIL, ModbusRegisterType.DISCRETE)


class ModbusRegisterRange(RegisterRange):
    """Registers of one type read by a single Modbus request."""

    def __init__(self, regs: Register | Iterable[Register], has_holes: bool = False) -> None:
        super().__init__(regs)
        self.has_holes = has_holes
        self.error = False
        self.modbus_error: int = ModbusErrorCode.NONE
        self.bits: list[int] | None = None
        self.words: list[int] | None = None

        first = self.registers[0]
        self.start = first.address
        end = self.start + first.width()
        for reg in self.registers[1:]:
            if reg.type != self.type:
                raise ValueError("registers of different type in the same range")
            end = max(end, reg.address + reg.width())
        self.count = end - self.start
        limit = MAX_READ_BITS if is_single_bit_type(self.type) else MAX_READ_REGISTERS
        if self.count > limit:
            raise ValueError("Modbus register range too large")

    def map_range(self, on_value: ValueCallback, on_error: ErrorCallback) -> None:
        if self.error:
            for reg in self.registers:
                on_error(reg)
            return

        if is_single_bit_type(self.type):
            if self.bits is None:
                raise RuntimeError("bits not loaded")
            for reg in self.registers:
                if reg.width() != 1:
                    raise SerialDeviceError(
                        "width other than 1 is not currently supported for reg type" + reg.type_name
                    )
                if reg.address - self.start >= self.count:
                    raise RuntimeError("address out of range")
                on_value(reg, self.bits[reg.address - self.start])
            return

        if self.words is None:
            raise RuntimeError("words not loaded")
        for reg in self.registers:
            width = reg.width()
            bits_left = reg.bit_width()
            base = reg.address - self.start
            if base + width > self.count:
                raise RuntimeError("address out of range")
            value = 0
            word_index = base
            bits_written = 0
            for pos in reversed(range(width)):
                data = self.words[base + pos]
                local_offset = max(reg.bit_offset - word_index * 16, 0)
                bit_count = min(16 - local_offset, bits_left)
                value |= (_mersenne(bit_count) & (data >> local_offset)) << bits_written
                word_index += 1
                bits_left -= bit_count
                bits_written += bit_count
            on_value(reg, value)

    def status(self) -> RangeStatus:
        # any Modbus error means a response was read successfully
        if self.modbus_error == ModbusErrorCode.NONE:
            return RangeStatus.UNKNOWN_ERROR if self.error else RangeStatus.OK
        return RangeStatus.DEVICE_ERROR

    def needs_split(self) -> bool:
        if self.modbus_error in (
            ModbusErrorCode.ILLEGAL_DATA_ADDRESS,
            ModbusErrorCode.ILLEGAL_DATA_VALUE,
        ):
            return self.has_holes
        return False


def is_packing(target: Register | ModbusRegisterRange) -> bool:
    """True when a write (or range) needs a multiple-register request."""
    if isinstance(target, ModbusRegisterRange):
        return target.type == ModbusRegisterType.HOLDING_MULTI or (
            target.type == ModbusRegisterType.HOLDING and target.count > 1
        )
    return target.type == ModbusRegisterType.HOLDING_MULTI or (
        target.type == ModbusRegisterType.HOLDING and target.width() > 1
    )


def is_exception(pdu: bytes) -> bool:
    """True when the response PDU carries an exception."""
    return bool(pdu[0] & _EXCEPTION_BIT)


def exception_code(pdu: bytes) -> int:
    """The Modbus exception code in a response PDU, or 0."""
    return pdu[1] if is_exception(pdu) else 0


def raise_for_exception_code(code: int) -> None:
    """Raise a transient error for a non-zero Modbus exception code."""
    if code == 0:
        return
    try:
        message = _ERROR_MESSAGES[ModbusErrorCode(code)]
    except (ValueError, KeyError):
        message = f"invalid modbus error code ({code})"
    raise TransientSerialError(message)


def _function_code(reg_type: int, op: _Operation, type_name: str, many: bool) -> int:
    if reg_type in (
        ModbusRegisterType.HOLDING,
        ModbusRegisterType.HOLDING_SINGLE,
        ModbusRegisterType.HOLDING_MULTI,
    ):
        if op is _Operation.READ:
            return _FN_READ_HOLDING
        return _FN_WRITE_MULTIPLE_REGISTERS if many else _FN_WRITE_SINGLE_REGISTER
    if reg_type == ModbusRegisterType.INPUT and op is _Operation.READ:
        return _FN_READ_INPUT
    if reg_type == ModbusRegisterType.COIL:
        if op is _Operation.READ:
            return _FN_READ_COILS
        return _FN_WRITE_MULTIPLE_COILS if many else _FN_WRITE_SINGLE_COIL
    if reg_type == ModbusRegisterType.DISCRETE and op is _Operation.READ:
        return _FN_READ_DISCRETE
    if op is _Operation.READ:
        raise SerialDeviceError("can't read from " + type_name)
    raise SerialDeviceError("can't write to " + type_name)


def _range_quantity(range_: ModbusRegisterRange) -> int:
    if not is_single_bit_type(range_.type) and range_.type not in (
        ModbusRegisterType.HOLDING,
        ModbusRegisterType.HOLDING_SINGLE,
        ModbusRegisterType.HOLDING_MULTI,
        ModbusRegisterType.INPUT,
    ):
        raise SerialDeviceError("invalid register type")
    return range_.count


def infer_write_request_pdu_size(reg: Register) -> int:
    """Bytes needed for a write request PDU for ``reg``."""
    return 6 + reg.width() * 2 if is_packing(reg) else 5


def infer_write_requests_count(reg: Register) -> int:
    """Number of requests needed to write ``reg``."""
    return 1 if is_packing(reg) else reg.width()


def infer_read_response_pdu_size(range_: ModbusRegisterRange) -> int:
    """Bytes expected in the response PDU for reading ``range_``."""
    if is_single_bit_type(range_.type):
        return 2 + math.ceil(range_.count / 8)
    return 2 + range_.count * 2


def read_response_pdu_size(pdu: bytes) -> int:
    """Size of a read response PDU according to its own header."""
    return EXCEPTION_RESPONSE_PDU_SIZE if is_exception(pdu) else pdu[1] + 2


def write_response_pdu_size(pdu: bytes) -> int:
    """Size of a write response PDU according to its own header."""
    return EXCEPTION_RESPONSE_PDU_SIZE if is_exception(pdu) else WRITE_RESPONSE_PDU_SIZE


def compose_read_request_pdu(range_: ModbusRegisterRange, shift: int = 0) -> bytes:
    """Build the read request PDU for a range."""
    function = _function_code(range_.type, _Operation.READ, range_.type_name, is_packing(range_))
    return bytes([function]) + _u16(range_.start + shift) + _u16(_range_quantity(range_))


def _caches(reg: Register) -> tuple[dict[tuple[int, int], int], dict[tuple[int, int], int]]:
    device: Any = reg.device
    return device.modbus_cache, device.modbus_tmp_cache


def compose_multiple_write_request_pdu(reg: Register, value: int, shift: int = 0) -> bytes:
    """Build a write-multiple-registers PDU; bits outside the register come from the cache."""
    cache, tmp_cache = _caches(reg)
    function = _function_code(reg.type, _Operation.WRITE, reg.type_name, is_packing(reg))
    base = reg.address + shift
    width = reg.width()
    bit_width = reg.bit_width()

    pdu = bytearray([function])
    pdu += _u16(base)
    pdu += _u16(width)
    pdu.append((width * 2) & 0xFF)

    bits_left = bit_width
    bit_pos = 0
    for i in range(width):
        key = (reg.type, base + i)
        cached = cache.get(key, value & 0xFFFF)
        local_offset = max(reg.bit_offset - bit_pos, 0)
        bit_count = min(16 - local_offset, bits_left)
        value_shift = bit_width - bit_pos - bit_count
        mask = _mersenne(bit_count)
        part = mask & (value >> value_shift)
        word = ((~mask & cached) | (part << local_offset)) & 0xFFFF
        tmp_cache[key] = word
        pdu += _u16(word)
        bits_left -= bit_count
        bit_pos += bit_count
    return bytes(pdu)


def compose_single_write_request_pdu(
    reg: Register, value: int, shift: int = 0, word_index: int = 0
) -> bytes:
    """Build a write-single-register (or coil) PDU for one word of ``reg``."""
    cache, tmp_cache = _caches(reg)
    value &= 0xFFFF
    if reg.type == ModbusRegisterType.COIL:
        value = 0xFF00 if value else 0x0000

    address = reg.address + shift + word_index
    key = (reg.type, address)
    cached = cache.get(key, value)
    local_offset = max(reg.bit_offset - word_index * 16, 0)
    bit_count = min(16 - local_offset, reg.bit_width())
    mask = _mersenne(bit_count) << local_offset
    word = ((~mask & cached) | (mask & (value << local_offset))) & 0xFFFF
    tmp_cache[key] = word

    function = _function_code(reg.type, _Operation.WRITE, reg.type_name, is_packing(reg))
    return bytes([function]) + _u16(address) + _u16(word)


def parse_read_response(pdu: bytes, range_: ModbusRegisterRange) -> None:
    """Store the values of a read response in ``range_`` and the device cache."""
    code = exception_code(pdu)
    try:
        range_.modbus_error = ModbusErrorCode(code)
    except ValueError:
        range_.modbus_error = code
    raise_for_exception_code(code)

    byte_count = pdu[1]
    data = bytes(pdu[2:2 + byte_count])

    if is_single_bit_type(range_.type):
        bits: list[int] = []
        remaining = range_.count
        for byte in data:
            in_byte = min(remaining, 8)
            bits.extend((byte >> i) & 1 for i in range(in_byte))
            remaining -= in_byte
        bits.extend([0] * (range_.count - len(bits)))
        range_.bits = bits
        return

    cache = range_.device.modbus_cache
    words = [0] * range_.count
    for i in range(min(len(data) // 2, range_.count)):
        word = (data[2 * i] << 8) | data[2 * i + 1]
        words[i] = word
        cache[(range_.type, range_.start + i)] = word
    range_.words = words


def parse_write_response(pdu: bytes) -> None:
    """Raise if a write response carries a Modbus exception."""
    raise_for_exception_code(exception_code(pdu))


def split_register_list(
    regs: Iterable[Register], config: Any, enable_holes: bool = True
) -> list[ModbusRegisterRange]:
    """Group registers into ranges that can each be read with one request.

    ``regs`` is expected in address order.
    """
    regs = list(regs)
    ranges: list[ModbusRegisterRange] = []
    if not regs:
        return ranges

    single_bit = is_single_bit_type(regs[0].type)
    if enable_holes:
        max_hole = config.max_bit_hole if single_bit else config.max_reg_hole
    else:
        max_hole = 0
    if single_bit:
        max_regs = MAX_READ_BITS
    elif 0 < config.max_read_registers <= MAX_READ_REGISTERS:
        max_regs = config.max_read_registers
    else:
        max_regs = MAX_READ_REGISTERS

    def flush(current: list[Register], has_holes: bool) -> None:
        range_ = ModbusRegisterRange(current, has_holes)
        logger.debug(
            "Adding range: %d %s(s) @ %d of device %s",
            range_.count, range_.type_name, range_.start, range_.device,
        )
        ranges.append(range_)

    current: list[Register] = []
    has_holes = False
    prev_start = prev_type = prev_end = -1
    prev_interval: Any = None
    for reg in regs:
        new_end = reg.address + reg.width()
        joins = (
            prev_end >= 0
            and reg.type == prev_type
            and prev_end <= reg.address <= prev_end + max_hole
            and reg.poll_interval == prev_interval
            and new_end - prev_start <= max_regs
        )
        if not joins:
            if current:
                flush(current, has_holes)
                has_holes = False
                current = []
            prev_start = reg.address
            prev_type = reg.type
            prev_interval = reg.poll_interval
        if current:
            has_holes |= reg.address != prev_end
        current.append(reg)
        prev_end = new_end
    if current:
        flush(current, has_holes)
    return ranges


def frame_timeout_for_baud(baud_rate: int) -> float:
    """Inter-frame silence (3.5 characters) for a baud rate, in seconds."""
    return math.ceil(35_000_000 / baud_rate) / 1_000_000