[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slipgate"
version = "1.6.13"
description = "Tunnel server toolkit: SOCKS5 and TLS/WebSocket SSH proxies, systemd unit management, firewall helpers and terminal prompts"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "socks5",
    "proxy",
    "tunnel",
    "websocket",
    "tls",
    "ssh",
    "systemd",
    "firewall",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["slipgate"]

[tool.hatch.build.targets.sdist]
include = ["slipgate", "tests", "pyproject.toml"]

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
