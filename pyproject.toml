[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "unistack"
version = "0.1.0"
description = "A small IPv4 network stack and memory managers, simulated in pure Python"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "networking",
    "tcp",
    "udp",
    "arp",
    "dhcp",
    "dns",
    "icmp",
    "ipv4",
    "ethernet",
    "paging",
    "allocator",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["unistack"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
