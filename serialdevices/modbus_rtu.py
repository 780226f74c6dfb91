"""Modbus RTU framing: requests, response checks and register exchange over a port."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from .crc16 import crc16
from .modbus import (
    EXCEPTION_RESPONSE_PDU_SIZE,
    ModbusErrorCode,
    ModbusRegisterRange,
    compose_multiple_write_request_pdu,
    compose_read_request_pdu,
    compose_single_write_request_pdu,
    infer_read_response_pdu_size,
    infer_write_request_pdu_size,
    infer_write_requests_count,
    is_exception,
    is_packing,
    parse_read_response,
    parse_write_response,
    read_response_pdu_size,
    write_response_pdu_size,
)
from .port import TransientSerialError
from .register import Register, RegisterRange

__all__ = [
    "InvalidCRCError",
    "MalformedResponseError",
    "DATA_SIZE",
    "DEFAULT_FRAME_TIMEOUT",
    "WRITE_RESPONSE_SIZE",
    "expect_n_bytes",
    "compose_read_request",
    "compose_write_requests",
    "check_response",
    "write_register",
    "read_register_range",
]

logger = logging.getLogger(__name__)

# bytes of an ADU outside its PDU: slave id (1) and CRC (2)
DATA_SIZE = 3
# seconds; used when the device configuration sets no frame timeout
DEFAULT_FRAME_TIMEOUT = 0.5
WRITE_RESPONSE_SIZE = 8


class InvalidCRCError(TransientSerialError):
    """The response CRC does not match its contents."""

    def __init__(self) -> None:
        super().__init__("invalid crc")


class MalformedResponseError(TransientSerialError):
    """The response is too short for what its header announces."""

    def __init__(self, what: str) -> None:
        super().__init__("malformed response: " + what)


def expect_n_bytes(n: int) -> Callable[..., bool]:
    """Frame-complete predicate: ``n`` bytes, or a full exception response."""

    def complete(buf: Sequence[int], size: int | None = None) -> bool:
        if size is None:
            size = len(buf)
        if size < 2:
            return False
        if is_exception(bytes(buf[1:2])):
            return size >= EXCEPTION_RESPONSE_PDU_SIZE + DATA_SIZE
        return size >= n

    return complete


def _with_crc(frame: bytes) -> bytes:
    return frame + crc16(frame).to_bytes(2, "big")


def compose_read_request(range_: ModbusRegisterRange, slave_id: int, shift: int = 0) -> bytes:
    """Full RTU frame reading ``range_``."""
    return _with_crc(bytes([slave_id & 0xFF]) + compose_read_request_pdu(range_, shift))


def compose_write_requests(
    reg: Register, slave_id: int, value: int, shift: int = 0
) -> list[bytes]:
    """RTU frames that write ``value`` to ``reg``.

    A packed register takes one write-multiple request; otherwise one
    single-write request per word, the least significant word first.
    """
    slave = bytes([slave_id & 0xFF])
    if is_packing(reg):
        return [_with_crc(slave + compose_multiple_write_request_pdu(reg, value, shift))]

    count = infer_write_requests_count(reg)
    expected_size = infer_write_request_pdu_size(reg) + DATA_SIZE
    requests = []
    for i in range(count):
        pdu = compose_single_write_request_pdu(reg, value & 0xFFFF, shift, count - i - 1)
        frame = _with_crc(slave + pdu)
        assert len(frame) == expected_size
        requests.append(frame)
        value >>= 16
    return requests


def _response_pdu_size(request: bytes, response: bytes) -> int:
    pdu = bytes(response[1:])
    # a write request is answered by a fixed-size echo
    if request[1] in (0x05, 0x06, 0x0F, 0x10):
        return write_response_pdu_size(pdu)
    return read_response_pdu_size(pdu)


def check_response(request: bytes, response: bytes) -> None:
    """Validate size, CRC, slave id and function code of a response frame."""
    if len(response) < 3:
        raise MalformedResponseError("invalid data size")
    pdu_size = _response_pdu_size(request, response)
    if pdu_size >= len(response) - 2:
        raise MalformedResponseError("invalid data size")

    received_crc = (response[pdu_size + 1] << 8) | response[pdu_size + 2]
    if received_crc != crc16(bytes(response[:pdu_size + 1])):
        raise InvalidCRCError()

    if request[0] != response[0]:
        raise TransientSerialError("request and response slave id mismatch")

    # mask off the exception bit to get the actual function code
    if request[1] != response[1] & 0x7F:
        raise TransientSerialError("request and response function code mismatch")


def _frame_timeout(config: Any) -> float:
    return DEFAULT_FRAME_TIMEOUT if config.frame_timeout < 0 else config.frame_timeout


def _skip_noise(port: Any) -> None:
    try:
        port.skip_noise()
    except Exception as exc:  # noise skipping is best effort
        logger.warning("SkipNoise failed: %s", exc)


def _check_or_skip_noise(port: Any, request: bytes, response: bytes) -> None:
    try:
        check_response(request, response)
    except (InvalidCRCError, MalformedResponseError):
        _skip_noise(port)
        raise


def write_register(port: Any, slave_id: int, reg: Register, value: int, shift: int = 0) -> None:
    """Write ``value`` to ``reg``; raises a transient error if the device does not confirm."""
    device = reg.device
    device.dismiss_tmp_cache()
    config = device.config

    logger.debug(
        "modbus: write %d %s(s) @ %d of device %s",
        reg.width(), reg.type_name, reg.address, device,
    )

    try:
        for request in compose_write_requests(reg, slave_id, value, shift):
            if config.guard_interval:
                port.sleep(config.guard_interval)
            port.write_bytes(request)

            response = port.read_frame(
                WRITE_RESPONSE_SIZE, _frame_timeout(config), expect_n_bytes(WRITE_RESPONSE_SIZE)
            )
            if not response:
                raise TransientSerialError("ReadFrame unknown error")
            _check_or_skip_noise(port, request, bytes(response))
            parse_write_response(bytes(response[1:]))
    except TransientSerialError as exc:
        device.dismiss_tmp_cache()
        raise TransientSerialError(
            f"failed to write {reg.type_name} @ {reg.address}: {exc}"
        ) from exc

    device.apply_tmp_cache()


def read_register_range(
    port: Any, slave_id: int, range_: RegisterRange, shift: int = 0
) -> None:
    """Read a Modbus range, storing values in it or marking it failed."""
    if not isinstance(range_, ModbusRegisterRange):
        raise TypeError("modbus range expected")

    config = range_.device.config
    # a connection error right after a Modbus error must not keep the old code
    range_.modbus_error = ModbusErrorCode.NONE

    logger.debug(
        "modbus: read %d %s(s) @ %d of device %s",
        range_.count, range_.type_name, range_.start, range_.device,
    )

    if config.guard_interval:
        port.sleep(config.guard_interval)

    message = ""
    try:
        request = compose_read_request(range_, slave_id, shift)
        port.write_bytes(request)

        expected = infer_read_response_pdu_size(range_) + DATA_SIZE
        response = port.read_frame(expected, _frame_timeout(config), expect_n_bytes(expected))
        if response:
            response = bytes(response)
            _check_or_skip_noise(port, request, response)
            parse_read_response(response[1:], range_)
            range_.error = False
            return
    except TransientSerialError as exc:
        message = str(exc)

    range_.error = True
    logger.warning(
        "read_register_range(): failed to read %d %s(s) @ %d of device %s%s",
        range_.count, range_.type_name, range_.start, range_.device,
        f": {message}" if message else "",
    )