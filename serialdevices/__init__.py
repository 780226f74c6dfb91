"""Register model, poll scheduling, Modbus RTU and other protocol drivers for serial-bus devices."""

__version__ = "0.1.0"

__all__ = [
    "bcd",
    "crc16",
    "port",
    "register",
    "device",
    "poll_plan",
    "register_handler",
    "s2k",
    "lls",
    "modbus",
    "modbus_rtu",
    "modbus_device",
    "ivtm",
    "mercury200",
    "pulsar",
]