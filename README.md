# serialdevices

A library for talking to meters, relay boards and sensors on a serial bus
(RS-485 and similar). It needs nothing outside the Python standard library
and runs on POSIX systems.

## What is in it

- `serialdevices.port`: the `Port` interface and `FileDescriptorPort`, which
  exchanges bytes and frames over an already open file descriptor. It also
  defines the exceptions `SerialDeviceError`, `TransientSerialError` and
  `PermanentRegisterError`, and `PortSettings` (the response timeout).
- `serialdevices.register`: `RegisterFormat`, `WordOrder`, `RegisterType`,
  `RegisterConfig`, interned `Register` objects bound to a device, and the
  register ranges `RegisterRange` and `SimpleRegisterRange`, with
  `RangeStatus`. `format_name`, `format_from_name` and
  `word_order_from_name` convert between formats and their names.
- `serialdevices.device`: `DeviceConfig` and the `SerialDevice` base class.
- `serialdevices.poll_plan`: `PollPlan`, which decides which entries are due
  and in what order to poll them.
- `serialdevices.register_handler`: `RegisterHandler`, which turns raw
  register values into text (with scale, offset, rounding and word order),
  turns text back into raw values for writing, and tracks the read/write
  `ErrorState` of a register.
- Protocol drivers:
  - Modbus RTU: `serialdevices.modbus` (PDUs, `ModbusRegisterRange`,
    `split_register_list`, `frame_timeout_for_baud`),
    `serialdevices.modbus_rtu` (RTU frames, `check_response`,
    `write_register`, `read_register_range`) and
    `serialdevices.modbus_device` (`ModbusDevice`, and `ModbusIODevice` for
    extension modules addressed through a master device);
  - `serialdevices.s2k`: `S2KDevice` relay boards and `crc_s2k`;
  - `serialdevices.lls`: `LLSDevice` fuel level sensors and `dallas_crc8`;
  - `serialdevices.ivtm`: `IVTMDevice` humidity/temperature meters;
  - `serialdevices.mercury200`: `Mercury200Device` energy meters;
  - `serialdevices.pulsar`: `PulsarDevice` meters and `pulsar_crc16`.
- Helpers: `serialdevices.bcd` (`WordSize`, `pack_bytes`,
  `packed_bcd_to_int`, `int_to_bcd_bytes`, `int_to_packed_bcd`) and
  `serialdevices.crc16` (`crc16`, the Modbus CRC-16).

Each protocol module also has a `REGISTER_TYPES` tuple that lists the
register types the protocol offers.

## Installation

```
pip install .
```

## Quick look

```python
from serialdevices.crc16 import crc16
from serialdevices.bcd import WordSize, int_to_packed_bcd, packed_bcd_to_int

crc16(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x01]))   # 0x840A

packed = int_to_packed_bcd(1234, WordSize.W16)   # 0x1234
packed_bcd_to_int(packed, WordSize.W16)          # 1234
```

A port wraps an open file descriptor, such as a serial line you have
already configured:

```python
from serialdevices.port import FileDescriptorPort, PortSettings

port = FileDescriptorPort(PortSettings(response_timeout=0.5), fd)
port.write_bytes(b"\x01\x03\x00\x00\x00\x01\x84\x0a")
frame = port.read_frame(256, None, None)
```

Reading Modbus holding registers through a device:

```python
from serialdevices.device import DeviceConfig
from serialdevices.modbus import ModbusRegisterType
from serialdevices.modbus_device import ModbusDevice
from serialdevices.register import Register, RegisterConfig

device = ModbusDevice(DeviceConfig(name="boiler", slave_id="1"), port)
regs = [
    Register.intern(device, RegisterConfig(type=ModbusRegisterType.HOLDING, address=a))
    for a in (0, 1, 2)
]
for range_ in device.split_register_list(regs):
    device.read_register_range(range_)
    range_.map_range(
        lambda reg, value: print(reg, value),
        lambda reg: print(reg, "read failed"),
    )
```

A `RegisterHandler` keeps the last value of one register:
`accept_device_value(value, ok)` returns the new error state and whether the
value changed, `text_value()` gives it as text, and `set_text_value(text)`
followed by `flush()` writes a new value through the device.

## Errors and diagnostics

Failures are raised as `SerialDeviceError`. Failures that a later attempt
may clear (timeouts, bad checksums, wrong replies, Modbus exception codes)
are `TransientSerialError`. `SerialDevice.read_register_range` records a
register as failed when reading it raises `TransientSerialError` or
`PermanentRegisterError`.

With `port.debug = True`, `FileDescriptorPort` prints the bytes it writes
and reads to standard error. The Modbus modules report ranges and failed
reads through the `logging` module.

## What it does not do

This is a library only. It has no command-line program and no long-running
service, and it does not publish values anywhere (for example to a message
broker). It does not read configuration files or device templates, and has
no registry that picks a driver class from a protocol name. It does not open
or configure serial lines or network connections: `FileDescriptorPort` is
given a descriptor that is already open and set up. `PollPlan` only
schedules; the caller runs the polling loop.

## Tests

```
pip install .[test]
pytest
```