from collections import deque

import pytest

from serialdevices.device import DeviceConfig
from serialdevices.lls import LLSDevice, dallas_crc8
from serialdevices.port import Port, SerialDeviceError, TransientSerialError
from serialdevices.register import Register, RegisterConfig, RegisterFormat


class FakePort(Port):
    def __init__(self):
        self.written = []
        self.responses = deque()
        self.open = True
        self.noise_skipped = 0

    def write_bytes(self, data):
        self.written.append(bytes(data))

    def read_byte(self):
        raise TransientSerialError("timeout")

    def read_frame(self, size, timeout=None, frame_complete=None):
        if not self.responses:
            raise TransientSerialError("request timed out")
        return self.responses.popleft()[:size]

    def skip_noise(self):
        self.noise_skipped += 1

    def close(self):
        self.open = False

    def check_port_open(self):
        if not self.open:
            raise SerialDeviceError("port not open")

    def is_open(self):
        return self.open

    def sleep(self, seconds):
        pass

    def current_time(self):
        return 0.0


def frame(slave, cmd, payload):
    data = bytes([0x3E, slave, cmd]) + bytes(payload)
    return data + bytes([dallas_crc8(data)])


PAYLOAD = [0x19, 0x34, 0x12, 0x78, 0x56]


@pytest.fixture
def setup():
    port = FakePort()
    device = LLSDevice(DeviceConfig(name="lls", slave_id="1"), port)
    return port, device


def reg(device, address, fmt=RegisterFormat.U16):
    return Register(device, RegisterConfig(address=address, format=fmt))


def test_dallas_crc8_check_value():
    assert dallas_crc8(b"") == 0
    assert dallas_crc8(b"123456789") == 0xA1


def test_read_register(setup):
    port, device = setup
    port.responses.append(frame(1, 6, PAYLOAD))
    assert device.read_register(reg(device, 0x0601)) == 0x1234
    request = port.written[0]
    assert request[:3] == bytes([0x31, 1, 6])
    assert request[3] == dallas_crc8(request[:3])
    assert port.noise_skipped == 1


def test_results_cached_until_end_of_cycle(setup):
    port, device = setup
    port.responses.append(frame(1, 6, PAYLOAD))
    assert device.read_register(reg(device, 0x0601)) == 0x1234
    assert device.read_register(reg(device, 0x0603)) == 0x5678
    assert len(port.written) == 1
    device.end_poll_cycle()
    port.responses.append(frame(1, 6, PAYLOAD))
    assert device.read_register(reg(device, 0x0600, RegisterFormat.CHAR8)) == 0x19
    assert len(port.written) == 2


@pytest.mark.parametrize(
    "response",
    [
        bytes([0x3D, 1, 6, 0x10]) + bytes([dallas_crc8(bytes([0x3D, 1, 6, 0x10]))]),
        frame(2, 6, [0x10]),
        frame(1, 7, [0x10]),
        frame(1, 6, [0x10])[:-1] + bytes([frame(1, 6, [0x10])[-1] ^ 0xFF]),
        bytes([0x3E]),
    ],
)
def test_invalid_responses(setup, response):
    port, device = setup
    port.responses.append(response)
    with pytest.raises(TransientSerialError):
        device.read_register(reg(device, 0x0601))


def test_address_out_of_range(setup):
    port, device = setup
    port.responses.append(frame(1, 6, PAYLOAD))
    with pytest.raises(SerialDeviceError):
        device.read_register(reg(device, 0x0650))


def test_write_not_supported(setup):
    port, device = setup
    with pytest.raises(SerialDeviceError):
        device.write_register(reg(device, 0x0601), 1)
    assert port.written == []