"""Intercepting HTTP/HTTPS proxy with per-host certificates, traffic capture and a SOCKS5 relay."""

__version__ = "0.1.0"