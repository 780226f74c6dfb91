from collections import deque

import pytest

from serialdevices.crc16 import crc16
from serialdevices.device import DeviceConfig
from serialdevices.mercury200 import Mercury200Device, Mercury200RegisterType
from serialdevices.port import SerialDeviceError, TransientSerialError
from serialdevices.register import Register, RegisterConfig, RegisterFormat

SLAVE = b"\x01\x02\x03\x04"


class FakePort:
    def __init__(self):
        self.written = []
        self.responses = deque()
        self.open = True

    def check_port_open(self):
        if not self.open:
            raise SerialDeviceError("port not open")

    def write_bytes(self, data):
        self.written.append(bytes(data))

    def read_frame(self, size, timeout=-1, frame_complete=None):
        if not self.responses:
            raise TransientSerialError("request timed out")
        return self.responses.popleft()[:size]

    def skip_noise(self):
        pass


def make_response(cmd, payload, slave=SLAVE):
    body = slave + bytes([cmd]) + payload
    return body + crc16(body).to_bytes(2, "big")


@pytest.fixture
def port():
    return FakePort()


@pytest.fixture
def device(port):
    return Mercury200Device(DeviceConfig("mercury200", "0x01020304", "mercury200"), port)


def make_reg(device, reg_type, address, fmt=RegisterFormat.BCD32):
    return Register(device, RegisterConfig(type=reg_type, address=address, format=fmt))


def test_request_frame(device, port):
    port.responses.append(make_response(0x63, b"\x12\x34\x56\x78"))
    device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))
    request = port.written[0]
    assert request[:5] == SLAVE + b"\x63"
    assert len(request) == 7
    assert crc16(request) == 0


def test_reads_bcd32_as_packed_bytes(device, port):
    port.responses.append(make_response(0x63, b"\x12\x34\x56\x78"))
    value = device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))
    assert value == 0x12345678


def test_reads_with_offset_and_caches(device, port):
    port.responses.append(make_response(0x63, b"\x00\x11\x22\x33\x44"))
    first = device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE16, 0x6301))
    second = device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE8, 0x6304))
    assert first == 0x1122
    assert second == 0x44
    assert len(port.written) == 1


def test_end_poll_cycle_clears_cache(device, port):
    reg = make_reg(device, Mercury200RegisterType.PARAM_VALUE24, 0x6300)
    port.responses.append(make_response(0x63, b"\x01\x02\x03"))
    port.responses.append(make_response(0x63, b"\x04\x05\x06"))
    assert device.read_register(reg) == 0x010203
    device.end_poll_cycle()
    assert device.read_register(reg) == 0x040506
    assert len(port.written) == 2


def test_bad_crc(device, port):
    frame = bytearray(make_response(0x63, b"\x12\x34\x56\x78"))
    frame[-1] ^= 0xFF
    port.responses.append(bytes(frame))
    with pytest.raises(TransientSerialError, match="bad CRC"):
        device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))


def test_bad_header_slave(device, port):
    port.responses.append(make_response(0x63, b"\x12\x34\x56\x78", slave=b"\x09\x09\x09\x09"))
    with pytest.raises(TransientSerialError, match="bad response header"):
        device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))


def test_bad_header_command(device, port):
    port.responses.append(make_response(0x27, b"\x12\x34\x56\x78"))
    with pytest.raises(TransientSerialError, match="bad response header"):
        device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))


def test_short_frame(device, port):
    port.responses.append(b"\x01\x02")
    with pytest.raises(TransientSerialError, match="too short"):
        device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300))


def test_address_out_of_range(device, port):
    port.responses.append(make_response(0x63, b"\x12\x34"))
    with pytest.raises(SerialDeviceError, match="out of range"):
        device.read_register(make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6310))


def test_invalid_register_type(device):
    with pytest.raises(SerialDeviceError, match="invalid register type"):
        device.read_register(make_reg(device, 9, 0x6300))


def test_write_not_supported(device):
    reg = make_reg(device, Mercury200RegisterType.PARAM_VALUE32, 0x6300)
    with pytest.raises(SerialDeviceError, match="not supported"):
        device.write_register(reg, 1)