import struct
from collections import deque

import pytest

from serialdevices.device import DeviceConfig
from serialdevices.port import SerialDeviceError, TransientSerialError
from serialdevices.pulsar import PulsarDevice, PulsarRegisterType, pulsar_crc16
from serialdevices.register import Register, RegisterConfig, RegisterFormat

ADDR_BCD = bytes.fromhex("00112233")


class FakePort:
    def __init__(self):
        self.written = []
        self.responses = deque()
        self.completions = []
        self.noise_skipped = 0
        self.open = True

    def check_port_open(self):
        if not self.open:
            raise SerialDeviceError("port not open")

    def write_bytes(self, data):
        self.written.append(bytes(data))

    def read_frame(self, size, timeout=-1, frame_complete=None):
        if not self.responses:
            raise TransientSerialError("request timed out")
        data = self.responses.popleft()[:size]
        if frame_complete is not None:
            self.completions.append(frame_complete(data, len(data)))
        return data

    def skip_noise(self):
        self.noise_skipped += 1


def make_response(payload, request_id, addr=ADDR_BCD):
    body = addr + bytes([1, len(payload) + 10]) + payload + request_id.to_bytes(2, "little")
    return body + pulsar_crc16(body).to_bytes(2, "little")


@pytest.fixture
def port():
    return FakePort()


@pytest.fixture
def device(port):
    return PulsarDevice(DeviceConfig("pulsar", "112233", "pulsar"), port)


def data_reg(device, address=3):
    return Register(
        device,
        RegisterConfig(type=PulsarRegisterType.DEFAULT, address=address, format=RegisterFormat.DOUBLE),
    )


def test_crc_check_value():
    assert pulsar_crc16(b"123456789") == 0x4B37


def test_crc_residue_is_zero():
    body = b"\x00\x11\x22\x33\x01\x0e"
    assert pulsar_crc16(body + pulsar_crc16(body).to_bytes(2, "little")) == 0


def test_data_request_wire_format(device, port):
    port.responses.append(make_response(struct.pack("<d", 1.0), 0))
    device.read_register(data_reg(device))
    request = port.written[0]
    assert request[:12] == ADDR_BCD + bytes([0x01, 0x0E]) + b"\x08\x00\x00\x00" + b"\x00\x00"
    assert len(request) == 14
    assert pulsar_crc16(request) == 0


def test_reads_little_endian_double(device, port):
    port.responses.append(make_response(struct.pack("<d", 12.5), 0))
    value = device.read_register(data_reg(device))
    assert struct.unpack("<d", value.to_bytes(8, "little"))[0] == 12.5
    assert port.completions == [True]
    assert port.noise_skipped == 1


def test_request_id_increments(device, port):
    port.responses.append(make_response(struct.pack("<d", 1.0), 0))
    port.responses.append(make_response(struct.pack("<d", 2.0), 1))
    device.read_register(data_reg(device))
    device.read_register(data_reg(device))
    assert port.written[1][10:12] == b"\x01\x00"
    assert device.request_id == 2


def test_systime_request_and_value(device, port):
    payload = bytes([1, 2, 3, 4, 5, 6])
    port.responses.append(make_response(payload, 0))
    reg = Register(device, RegisterConfig(type=PulsarRegisterType.SYSTIME, format=RegisterFormat.U64))
    value = device.read_register(reg)
    assert value == int.from_bytes(payload, "little")
    request = port.written[0]
    assert request[:8] == ADDR_BCD + bytes([0x01, 0x0A]) + b"\x00\x00"
    assert len(request) == 10


def test_request_id_mismatch(device, port):
    port.responses.append(make_response(struct.pack("<d", 1.0), 5))
    with pytest.raises(TransientSerialError, match="request ID mismatch"):
        device.read_register(data_reg(device))
    assert device.request_id == 0


def test_address_mismatch(device, port):
    port.responses.append(make_response(struct.pack("<d", 1.0), 0, addr=bytes.fromhex("00998877")))
    with pytest.raises(TransientSerialError, match="slave address mismatch"):
        device.read_register(data_reg(device))


def test_crc_mismatch(device, port):
    frame = bytearray(make_response(struct.pack("<d", 1.0), 0))
    frame[-1] ^= 0xFF
    port.responses.append(bytes(frame))
    with pytest.raises(TransientSerialError, match="CRC mismatch"):
        device.read_register(data_reg(device))


def test_short_frame(device, port):
    port.responses.append(b"\x00\x11")
    with pytest.raises(TransientSerialError, match="too short"):
        device.read_register(data_reg(device))


def test_truncated_frame(device, port):
    port.responses.append(make_response(struct.pack("<d", 1.0), 0)[:12])
    with pytest.raises(TransientSerialError, match="unexpected end of frame"):
        device.read_register(data_reg(device))


def test_wrong_register_type(device):
    reg = Register(device, RegisterConfig(type=7, format=RegisterFormat.U64))
    with pytest.raises(SerialDeviceError, match="wrong register type"):
        device.read_register(reg)


def test_write_not_supported(device):
    with pytest.raises(SerialDeviceError, match="not supported"):
        device.write_register(data_reg(device), 1)