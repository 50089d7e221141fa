[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ntconnect"
version = "0.1.0"
description = "Device-side agent that authenticates with a device management server, reports inventory and serves remote shell sessions over a websocket."
requires-python = ">=3.10"
keywords = [
    "device management",
    "remote terminal",
    "inventory",
    "websocket",
    "iot",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests",
    "websocket-client",
    "msgpack",
    "cryptography",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["ntconnect"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
