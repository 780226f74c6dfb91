from collections import deque

import pytest

from serialdevices.crc16 import crc16
from serialdevices.device import DeviceConfig
from serialdevices.modbus import ModbusRegisterRange, ModbusRegisterType
from serialdevices.modbus_device import AggregatedSlaveId, ModbusDevice, ModbusIODevice
from serialdevices.modbus_rtu import compose_write_requests
from serialdevices.port import SerialDeviceError
from serialdevices.register import RangeStatus, Register, RegisterConfig, RegisterFormat


class FakePort:
    def __init__(self):
        self.written = []
        self.responses = deque()

    def write_bytes(self, data):
        self.written.append(bytes(data))

    def read_frame(self, size, timeout=-1, frame_complete=None):
        return self.responses.popleft()[:size]

    def skip_noise(self):
        pass

    def sleep(self, seconds):
        pass


def frame(*body):
    data = bytes(body)
    return data + crc16(data).to_bytes(2, "big")


def reg(device, type_, address, fmt=RegisterFormat.U16):
    return Register(device, RegisterConfig(type=type_, address=address, format=fmt))


def test_single_register_read_not_supported():
    device = ModbusDevice(DeviceConfig("m", "1"), FakePort())
    with pytest.raises(SerialDeviceError):
        device.read_register(reg(device, ModbusRegisterType.HOLDING, 0))


def test_split_register_list_groups_contiguous():
    device = ModbusDevice(DeviceConfig("m", "1"), FakePort())
    regs = [
        reg(device, ModbusRegisterType.HOLDING, 0),
        reg(device, ModbusRegisterType.HOLDING, 1),
        reg(device, ModbusRegisterType.HOLDING, 5),
        reg(device, ModbusRegisterType.INPUT, 6),
    ]
    ranges = device.split_register_list(regs)
    assert [(r.start, r.count) for r in ranges] == [(0, 2), (5, 1), (6, 1)]
    assert all(isinstance(r, ModbusRegisterRange) for r in ranges)


def test_device_reads_range():
    port = FakePort()
    device = ModbusDevice(DeviceConfig("m", "3"), port)
    range_ = device.split_register_list([reg(device, ModbusRegisterType.HOLDING, 0)])[0]
    port.responses.append(frame(3, 3, 2, 0, 9))
    device.read_register_range(range_)
    assert port.written[0][0] == 3
    values = []
    range_.map_range(lambda r, v: values.append(v), lambda r: None)
    assert values == [9]
    assert range_.status() == RangeStatus.OK


def test_device_writes_register_with_its_slave_id():
    port = FakePort()
    device = ModbusDevice(DeviceConfig("m", "2"), port)
    r = reg(device, ModbusRegisterType.HOLDING, 4)
    (expected,) = compose_write_requests(r, 2, 7)
    device.modbus_tmp_cache.clear()
    port.responses.append(expected)
    device.write_register(r, 7)
    assert port.written == [expected]
    assert device.modbus_cache[(ModbusRegisterType.HOLDING, 4)] == 7


def test_io_device_parses_aggregated_slave_id():
    device = ModbusIODevice(DeviceConfig("io", "1:2", stride=1000, shift=0), FakePort())
    assert device.slave_id == AggregatedSlaveId(1, 2)
    assert device.shift == 2000


def test_io_device_module_index_wraps_every_four():
    first = ModbusIODevice(DeviceConfig("io", "1:1", stride=100, shift=5), FakePort())
    fifth = ModbusIODevice(DeviceConfig("io", "1:5", stride=100, shift=5), FakePort())
    assert first.shift == fifth.shift


def test_io_device_rejects_plain_slave_id():
    with pytest.raises(SerialDeviceError):
        ModbusIODevice(DeviceConfig("io", "7"), FakePort())


def test_io_device_reads_with_primary_and_shift():
    port = FakePort()
    device = ModbusIODevice(DeviceConfig("io", "4:1", stride=1000, shift=0), port)
    range_ = device.split_register_list([reg(device, ModbusRegisterType.COIL, 0, RegisterFormat.U8)])[0]
    port.responses.append(frame(4, 1, 1, 1))
    device.read_register_range(range_)
    request = port.written[0]
    assert request[0] == 4
    assert int.from_bytes(request[2:4], "big") == device.shift
    values = []
    range_.map_range(lambda r, v: values.append(v), lambda r: None)
    assert values == [1]


def test_io_device_single_read_not_supported():
    device = ModbusIODevice(DeviceConfig("io", "1:1"), FakePort())
    with pytest.raises(SerialDeviceError):
        device.read_register(reg(device, ModbusRegisterType.INPUT, 0))


def test_io_device_write_uses_shift():
    port = FakePort()
    device = ModbusIODevice(DeviceConfig("io", "1:1", stride=16, shift=0), port)
    r = reg(device, ModbusRegisterType.HOLDING, 2)
    (expected,) = compose_write_requests(r, 1, 5, device.shift)
    device.modbus_tmp_cache.clear()
    port.responses.append(expected)
    device.write_register(r, 5)
    assert port.written == [expected]
    assert int.from_bytes(port.written[0][2:4], "big") == 2 + device.shift