[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mitmtap"
version = "0.1.0"
description = "An intercepting HTTP/HTTPS proxy that decrypts TLS with per-host certificates and splits the traffic into HTTP messages"
requires-python = ">=3.11"
dependencies = [
    "cryptography",
]
keywords = ["proxy", "mitm", "https", "tls", "socks5", "http"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
mitmtap = "mitmtap.server:main"

[tool.hatch.build.targets.wheel]
packages = ["mitmtap"]

[tool.pytest.ini_options]
addopts = "-ra"
