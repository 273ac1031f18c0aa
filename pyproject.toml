[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtty"
version = "1.1.1"
description = "Device-side agent library for reaching a device's terminal, commands, files and local web servers through an rttys server"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "terminal",
    "remote-access",
    "pty",
    "tty",
    "device-management",
    "file-transfer",
    "http-proxy",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Terminals",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rtty"]

[tool.hatch.build.targets.sdist]
include = [
    "rtty",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
