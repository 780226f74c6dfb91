from collections import deque

import pytest

from serialdevices.device import DeviceConfig
from serialdevices.port import Port, SerialDeviceError, TransientSerialError
from serialdevices.register import Register, RegisterConfig, RegisterFormat
from serialdevices.s2k import S2KDevice, S2KRegisterType, crc_s2k


class FakePort(Port):
    def __init__(self):
        self.written = []
        self.responses = deque()
        self.open = True

    def write_bytes(self, data):
        self.written.append(bytes(data))

    def read_byte(self):
        raise TransientSerialError("timeout")

    def read_frame(self, size, timeout=None, frame_complete=None):
        if not self.responses:
            raise TransientSerialError("request timed out")
        return self.responses.popleft()[:size]

    def skip_noise(self):
        pass

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


def frame(*payload):
    data = bytes(payload)
    return data + bytes([crc_s2k(data)])


@pytest.fixture
def setup():
    port = FakePort()
    device = S2KDevice(DeviceConfig(name="s2k", slave_id="1"), port)
    return port, device


def reg(device, type_, address):
    return Register(device, RegisterConfig(type=type_, address=address, format=RegisterFormat.U8))


def test_crc_table_values():
    assert crc_s2k(b"") == 0
    assert crc_s2k(b"\x01") == 0x5E


def test_initial_relay_state(setup):
    port, device = setup
    assert device.read_register(reg(device, S2KRegisterType.RELAY, 1)) == 0
    assert device.read_register(reg(device, S2KRegisterType.RELAY_MODE, 1)) == 2
    assert port.written == []


def test_set_relay_on(setup):
    port, device = setup
    relay = reg(device, S2KRegisterType.RELAY, 2)
    port.responses.append(frame(1, 5, 0x16, 2, 1))
    device.write_register(relay, 1)
    command = port.written[0]
    assert command[:6] == bytes([1, 6, 0, 0x15, 2, 1])
    assert command[6] == crc_s2k(command[:6])
    assert device.read_register(relay) == 1
    assert device.read_register(reg(device, S2KRegisterType.RELAY_MODE, 2)) == 1


def test_set_relay_off(setup):
    port, device = setup
    relay = reg(device, S2KRegisterType.RELAY, 3)
    port.responses.append(frame(1, 5, 0x16, 3, 2))
    device.write_register(relay, 0)
    assert port.written[0][5] == 2
    assert device.read_register(relay) == 0


def test_invalid_write_register(setup):
    port, device = setup
    with pytest.raises(SerialDeviceError):
        device.write_register(reg(device, S2KRegisterType.RELAY, 5), 1)
    with pytest.raises(SerialDeviceError):
        device.write_register(reg(device, S2KRegisterType.RELAY_MODE, 1), 1)


def test_bad_crc_raises(setup):
    port, device = setup
    port.responses.append(bytes([1, 5, 0x16, 2, 1, 0]) if crc_s2k(bytes([1, 5, 0x16, 2, 1])) else bytes([1, 5, 0x16, 2, 1, 1]))
    with pytest.raises(TransientSerialError):
        device.write_register(reg(device, S2KRegisterType.RELAY, 2), 1)


def test_wrong_length_raises(setup):
    port, device = setup
    port.responses.append(frame(1, 5, 0x16, 2))
    with pytest.raises(TransientSerialError):
        device.write_register(reg(device, S2KRegisterType.RELAY, 2), 1)


def test_read_relay_delay(setup):
    port, device = setup
    port.responses.append(frame(1, 5, 6, 6, 0x0A))
    assert device.read_register(reg(device, S2KRegisterType.RELAY_DELAY, 2)) == 0x0A
    assert port.written[0][:6] == bytes([1, 6, 0, 5, 6, 0])


def test_read_relay_default(setup):
    port, device = setup
    port.responses.append(frame(1, 5, 6, 2, 0x01))
    assert device.read_register(reg(device, S2KRegisterType.RELAY_DEFAULT, 2)) == 0x01
    assert port.written[0][4] == 2


def test_read_default_wrong_reply_code(setup):
    port, device = setup
    port.responses.append(frame(1, 5, 7, 2, 0x01))
    with pytest.raises(TransientSerialError):
        device.read_register(reg(device, S2KRegisterType.RELAY_DEFAULT, 2))


def test_closed_port_raises(setup):
    port, device = setup
    port.close()
    with pytest.raises(SerialDeviceError):
        device.write_register(reg(device, S2KRegisterType.RELAY, 1), 1)