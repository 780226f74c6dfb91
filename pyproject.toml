[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "serialdevices"
version = "0.1.0"
description = "Protocol drivers, register model and poll scheduling for serial-bus meters, relays and sensors"
requires-python = ">=3.10"
dependencies = []
keywords = ["serial", "modbus", "rs485", "home-automation", "meters", "bcd", "crc16"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Home Automation",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["serialdevices"]

[tool.pytest.ini_options]
addopts = "-ra"
