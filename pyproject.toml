[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "radplug"
version = "0.1.0"
description = "IPv6 router advertisement option plugins and NDP interface helpers"
requires-python = ">=3.10"
keywords = ["ipv6", "ndp", "router-advertisement", "slaac", "rdnss", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["radplug"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
