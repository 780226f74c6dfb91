"""Byte ports used to talk to serial devices."""

from __future__ import annotations

import fcntl
import os
import select
import struct
import sys
import termios
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

__all__ = [
    "SerialDeviceError",
    "TransientSerialError",
    "PermanentRegisterError",
    "PortSettings",
    "Port",
    "FileDescriptorPort",
]

FrameCompletePredicate = Callable[[bytes], bool]

_DEFAULT_FRAME_TIMEOUT = 0.015
_NOISE_TIMEOUT = 0.010
# Short pause after a complete frame so the next device sees a frame boundary.
_POST_FRAME_PAUSE = 0.000015


class SerialDeviceError(Exception):
    """A failure talking to a serial device."""


class TransientSerialError(SerialDeviceError):
    """A failure that may go away on retry (timeout, bad CRC, ...)."""


class PermanentRegisterError(SerialDeviceError):
    """A register that the device will never serve."""


@dataclass
class PortSettings:
    """Port-wide settings.

    ``response_timeout`` is in seconds; ``None`` or a non-positive value waits
    without limit.
    """

    response_timeout: float | None = None


class Port(ABC):
    """A bidirectional byte channel to a bus of devices."""

    debug: bool = False

    @abstractmethod
    def write_bytes(self, data: bytes) -> None: ...

    @abstractmethod
    def read_byte(self) -> int: ...

    @abstractmethod
    def read_frame(
        self,
        size: int,
        timeout: float | None = None,
        frame_complete: FrameCompletePredicate | None = None,
    ) -> bytes: ...

    @abstractmethod
    def skip_noise(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def check_port_open(self) -> None: ...

    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def sleep(self, seconds: float) -> None: ...

    @abstractmethod
    def current_time(self) -> float: ...

    def __enter__(self) -> Port:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.is_open():
            self.close()


def _hex(data: bytes, upper: bool = False) -> str:
    fmt = "{:02X}" if upper else "{:02x}"
    return " ".join(fmt.format(b) for b in data)


class FileDescriptorPort(Port):
    """A port backed by an OS file descriptor (serial line, socket, pipe)."""

    def __init__(self, settings: PortSettings, fd: int = -1) -> None:
        self.settings = settings
        self._fd = fd
        self.debug = False

    def is_open(self) -> bool:
        return self._fd >= 0

    def check_port_open(self) -> None:
        if not self.is_open():
            raise SerialDeviceError("port not open")

    def close(self) -> None:
        self.check_port_open()
        os.close(self._fd)
        self._fd = -1

    def _select(self, timeout: float | None) -> bool:
        wait = timeout if timeout is not None and timeout > 0 else None
        try:
            ready, _, _ = select.select([self._fd], [], [], wait)
        except (OSError, ValueError) as exc:
            raise SerialDeviceError("select() failed") from exc
        return bool(ready)

    def _read(self, count: int) -> bytes:
        try:
            return os.read(self._fd, count)
        except OSError as exc:
            raise SerialDeviceError("read() failed") from exc

    def _available(self) -> int:
        try:
            raw = fcntl.ioctl(self._fd, termios.FIONREAD, b"\0\0\0\0")
        except OSError as exc:
            raise SerialDeviceError("FIONREAD ioctl() failed") from exc
        return struct.unpack("i", raw)[0]

    def on_ready_empty_fd(self) -> None:
        """Called when the descriptor is readable but holds no data."""

    def write_bytes(self, data: bytes) -> None:
        data = bytes(data)
        try:
            written = os.write(self._fd, data)
        except OSError as exc:
            raise SerialDeviceError("serial write failed") from exc
        if written < len(data):
            raise SerialDeviceError("serial write failed")
        if self.debug:
            print(f"Write: {_hex(data)}", file=sys.stderr)

    def read_byte(self) -> int:
        self.check_port_open()
        if not self._select(self.settings.response_timeout):
            raise TransientSerialError("timeout")
        chunk = self._read(1)
        if not chunk:
            raise SerialDeviceError("read() failed")
        if self.debug:
            print(f"Read: {chunk[0]:02x}", file=sys.stderr)
        return chunk[0]

    def read_frame(
        self,
        size: int,
        timeout: float | None = None,
        frame_complete: FrameCompletePredicate | None = None,
    ) -> bytes:
        """Read up to ``size`` bytes forming one frame.

        The first byte is awaited for the response timeout; later bytes for
        ``timeout`` (default 15 ms).  Reading stops early once
        ``frame_complete`` accepts what has been read.
        """
        self.check_port_open()
        inter_byte = _DEFAULT_FRAME_TIMEOUT if timeout is None or timeout < 0 else timeout
        buf = bytearray()
        while len(buf) < size:
            if frame_complete is not None and frame_complete(bytes(buf)):
                time.sleep(_POST_FRAME_PAUSE)
                break
            wait = self.settings.response_timeout if not buf else inter_byte
            if not self._select(wait):
                break
            available = self._available()
            if not available:
                self.on_ready_empty_fd()
                continue
            available = min(available, size - len(buf))
            chunk = self._read(available)
            if len(chunk) < available:
                raise SerialDeviceError("short read()")
            buf += chunk

        if not buf:
            raise TransientSerialError("request timed out")
        if self.debug:
            print(f"ReadFrame: {_hex(buf, upper=True)}", file=sys.stderr)
        return bytes(buf)

    def skip_noise(self) -> None:
        while self._select(_NOISE_TIMEOUT):
            chunk = self._read(1)
            if not chunk:
                raise SerialDeviceError("read() failed")
            if self.debug:
                print(f"read noise: {chunk[0]:02x}", file=sys.stderr)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def current_time(self) -> float:
        return time.monotonic()