[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmdhcp"
version = "0.1.0"
description = "IP address management, DHCP leases, metrics and admission checks for virtual machine networks"
requires-python = ">=3.10"
dependencies = []
keywords = ["dhcp", "dhcpv4", "ipam", "ip-pool", "virtual-machine", "networking", "admission-webhook", "prometheus"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
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
packages = ["vmdhcp"]

[tool.hatch.build.targets.sdist]
include = ["vmdhcp", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
