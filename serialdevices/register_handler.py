"""Conversion between raw register values and their text form, with write-back."""

from __future__ import annotations

import math
import re
import struct
import sys
import threading
import weakref
from enum import IntEnum
from typing import Any

from .bcd import WordSize, int_to_packed_bcd, packed_bcd_to_int
from .port import TransientSerialError
from .register import Register, RegisterFormat, WordOrder

__all__ = ["ErrorState", "RegisterHandler"]

_U64_MASK = 0xFFFFFFFFFFFFFFFF

_INT_RE = re.compile(r"\s*([+-]?\d+)")
_FLOAT_RE = re.compile(
    r"\s*([+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan))",
    re.IGNORECASE,
)

_SIGNED_MASKS = {
    RegisterFormat.S8: 0xFF,
    RegisterFormat.S16: 0xFFFF,
    RegisterFormat.S24: 0xFFFFFF,
    RegisterFormat.S32: 0xFFFFFFFF,
    RegisterFormat.S64: _U64_MASK,
}

_UNSIGNED_MASKS = {
    RegisterFormat.U8: 0xFF,
    RegisterFormat.U16: 0xFFFF,
    RegisterFormat.U24: 0xFFFFFF,
    RegisterFormat.U32: 0xFFFFFFFF,
    RegisterFormat.U64: _U64_MASK,
}

_SIGNED_BITS = {
    RegisterFormat.S8: 8,
    RegisterFormat.S16: 16,
    RegisterFormat.S24: 24,
    RegisterFormat.S32: 32,
    RegisterFormat.S64: 64,
}

_BCD_SIZES = {
    RegisterFormat.BCD8: (0xFF, WordSize.W8),
    RegisterFormat.BCD16: (0xFFFF, WordSize.W16),
    RegisterFormat.BCD24: (0xFFFFFF, WordSize.W24),
    RegisterFormat.BCD32: (0xFFFFFFFF, WordSize.W32),
}


class ErrorState(IntEnum):
    """Read/write error state of a register."""

    NO_ERROR = 0
    WRITE_ERROR = 1
    READ_ERROR = 2
    READ_WRITE_ERROR = 3
    UNKNOWN = 4
    UNCHANGED = 5


def _round_half_away(x: float) -> float:
    if not math.isfinite(x):
        return x
    magnitude = abs(x)
    whole = math.floor(magnitude)
    if magnitude - whole >= 0.5:
        whole += 1
    return math.copysign(whole, x)


def _round_to(value: float, step: float) -> float:
    return _round_half_away(value / step) * step if step > 0 else value


def _to_signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


def _parse_int(text: str, signed: bool) -> int:
    match = _INT_RE.match(text)
    if match is None:
        raise ValueError(f"invalid number: {text!r}")
    number = int(match.group(1))
    if signed:
        if not -(1 << 63) <= number < (1 << 63):
            raise ValueError(f"number out of range: {text!r}")
        return number
    if abs(number) > _U64_MASK:
        raise ValueError(f"number out of range: {text!r}")
    return number & _U64_MASK


def _parse_float(text: str) -> float:
    match = _FLOAT_RE.match(text)
    if match is None:
        raise ValueError(f"invalid number: {text!r}")
    return float(match.group(1))


def _float32_bits(value: float) -> int:
    try:
        packed = struct.pack("<f", value)
    except OverflowError:
        packed = struct.pack("<f", math.copysign(math.inf, value))
    return struct.unpack("<I", packed)[0]


class RegisterHandler:
    """Holds the last known value of one register and writes changes back."""

    def __init__(
        self,
        device: Any,
        reg: Register,
        flush_needed: threading.Event | None = None,
        debug: bool = False,
    ) -> None:
        self._device = weakref.ref(device)
        self.register = reg
        self._flush_needed = flush_needed
        self.debug = debug
        self._value = 0
        self._dirty = False
        self._did_read = False
        self._lock = threading.Lock()
        self._error_state = ErrorState.UNKNOWN

    @property
    def device(self) -> Any:
        return self._device()

    @property
    def did_read(self) -> bool:
        return self._did_read

    @property
    def error_state(self) -> ErrorState:
        return self._error_state

    def _set_state(self, new_state: ErrorState) -> ErrorState:
        if new_state == self._error_state:
            return ErrorState.UNCHANGED
        self._error_state = new_state
        return new_state

    def _update_read_error(self, error: bool) -> ErrorState:
        state = self._error_state
        has_write_error = state in (ErrorState.WRITE_ERROR, ErrorState.READ_WRITE_ERROR)
        if error:
            new_state = ErrorState.READ_WRITE_ERROR if has_write_error else ErrorState.READ_ERROR
        else:
            new_state = ErrorState.WRITE_ERROR if has_write_error else ErrorState.NO_ERROR
        return self._set_state(new_state)

    def _update_write_error(self, error: bool) -> ErrorState:
        state = self._error_state
        has_read_error = state in (ErrorState.READ_ERROR, ErrorState.READ_WRITE_ERROR)
        if error:
            new_state = ErrorState.READ_WRITE_ERROR if has_read_error else ErrorState.WRITE_ERROR
        else:
            new_state = ErrorState.READ_ERROR if has_read_error else ErrorState.NO_ERROR
        return self._set_state(new_state)

    def need_to_poll(self) -> bool:
        """True when the register is polled and holds no pending write."""
        with self._lock:
            return self.register.poll and not self._dirty

    def accept_device_value(self, new_value: int, ok: bool) -> tuple[ErrorState, bool]:
        """Take a value read from the device.

        Returns the new error state (``UNCHANGED`` if it did not change) and
        whether the value should be published.
        """
        if not self.need_to_poll():
            return ErrorState.UNCHANGED, False
        if not ok:
            return self._update_read_error(True), False

        first_poll = not self._did_read
        self._did_read = True

        reg = self.register
        if reg.has_error_value and reg.error_value == new_value:
            if self.debug:
                print(f"register {reg} contains error value", file=sys.stderr)
            return self._update_read_error(True), False

        with self._lock:
            if self._value != new_value:
                if self._dirty:
                    return self._update_read_error(False), False
                self._value = new_value
                changed = True
            else:
                changed = first_poll

        if changed and self.debug and not first_poll or (changed and self.debug):
            print(f"new val for {reg}: {new_value:x}", file=sys.stderr)
        return self._update_read_error(False), changed

    def need_to_flush(self) -> bool:
        """True when a value set from text waits to be written."""
        with self._lock:
            return self._dirty

    def flush(self) -> ErrorState:
        """Write a pending value to the device."""
        if not self.need_to_flush():
            return ErrorState.UNCHANGED
        with self._lock:
            self._dirty = False
            value = self._value
        try:
            self.device.write_register(self.register, value)
        except TransientSerialError as exc:
            print(
                f"RegisterHandler.flush(): warning: {exc} for device {self.register.device}",
                file=sys.stderr,
            )
            return self._update_write_error(True)
        return self._update_write_error(False)

    def _invert_word_order(self, value: int) -> int:
        if self.register.word_order == WordOrder.BIG_ENDIAN:
            return value
        result = 0
        for _ in range(self.register.width()):
            result = (result << 16) | (value & 0xFFFF)
            value >>= 16
        return result & _U64_MASK

    def text_value(self) -> str:
        """Current value as text, scaled and rounded."""
        return self._slave_to_text(self._invert_word_order(self._value))

    def set_text_value(self, text: str) -> None:
        """Set a value from text; it is written on the next flush."""
        value = self._invert_word_order(self._text_to_slave(text))
        with self._lock:
            self._dirty = True
            self._value = value
        if self._flush_needed is not None:
            self._flush_needed.set()

    def _scaled(self, value: float, precision: int) -> str:
        reg = self.register
        return "%.*g" % (precision, _round_to(reg.scale * value + reg.offset, reg.round_to))

    def _int_text(self, value: int) -> str:
        reg = self.register
        if reg.scale == 1 and reg.offset == 0 and reg.round_to == 0:
            return str(value)
        return self._scaled(value, 15)

    def _slave_to_text(self, value: int) -> str:
        fmt = self.register.format
        if fmt in _SIGNED_BITS:
            return self._int_text(_to_signed(value, _SIGNED_BITS[fmt]))
        if fmt in _BCD_SIZES:
            return self._int_text(packed_bcd_to_int(value, _BCD_SIZES[fmt][1]))
        if fmt == RegisterFormat.FLOAT:
            number = struct.unpack("<f", struct.pack("<I", value & 0xFFFFFFFF))[0]
            return self._scaled(number, 7)
        if fmt == RegisterFormat.DOUBLE:
            number = struct.unpack("<d", struct.pack("<Q", value & _U64_MASK))[0]
            return self._scaled(number, 15)
        if fmt == RegisterFormat.CHAR8:
            return chr(value & 0xFF)
        return self._int_text(value)

    def _scaled_int_from_text(self, text: str, signed: bool) -> int:
        reg = self.register
        if reg.scale == 1 and reg.offset == 0:
            return _parse_int(text, signed)
        number = _round_half_away((_round_to(_parse_float(text), reg.round_to) - reg.offset) / reg.scale)
        if not math.isfinite(number):
            raise ValueError(f"number out of range: {text!r}")
        return int(number) & _U64_MASK

    def _scaled_float_from_text(self, text: str) -> float:
        reg = self.register
        return (_round_to(_parse_float(text), reg.round_to) - reg.offset) / reg.scale

    def _text_to_slave(self, text: str) -> int:
        fmt = self.register.format
        if fmt in _SIGNED_MASKS:
            return self._scaled_int_from_text(text, signed=True) & _SIGNED_MASKS[fmt]
        if fmt in _UNSIGNED_MASKS:
            return self._scaled_int_from_text(text, signed=False) & _UNSIGNED_MASKS[fmt]
        if fmt == RegisterFormat.FLOAT:
            return _float32_bits(self._scaled_float_from_text(text))
        if fmt == RegisterFormat.DOUBLE:
            return struct.unpack("<Q", struct.pack("<d", self._scaled_float_from_text(text)))[0]
        if fmt == RegisterFormat.CHAR8:
            encoded = text.encode("utf-8")
            return encoded[0] if encoded else 0
        if fmt in _BCD_SIZES:
            mask, size = _BCD_SIZES[fmt]
            return int_to_packed_bcd(self._scaled_int_from_text(text, signed=False) & mask, size)
        return self._scaled_int_from_text(text, signed=False)