"""A minimal SOCKS5 CONNECT proxy without authentication."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import socket
from enum import IntEnum
from typing import NamedTuple

from .errors import ProxyError

logger = logging.getLogger(__name__)

BUFFER_SIZE = 1024
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7091
SOCKS_VERSION = 5
NO_AUTHENTICATION = bytes([SOCKS_VERSION, 0])
# The bound address in replies is a fixed, meaningless 127.0.0.1:80.
_BOUND_ADDRESS = bytes([0, 1, 127, 0, 0, 1, 0, 80])
REPLY_SUCCEEDED = bytes([SOCKS_VERSION, 0]) + _BOUND_ADDRESS
REPLY_CONNECTION_REFUSED = bytes([SOCKS_VERSION, 5]) + _BOUND_ADDRESS
REPLY_ADDRESS_TYPE_NOT_SUPPORTED = bytes([SOCKS_VERSION, 8]) + _BOUND_ADDRESS


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03


class UnsupportedAddressType(ProxyError):
    """The client asked for an address type other than IPv4 or a domain."""


class Socks5Target(NamedTuple):
    address_type: AddressType
    host: str
    port: int


def parse_socks5_request(data: bytes) -> Socks5Target:
    """Decode the destination of a SOCKS5 request message."""
    if len(data) < 4:
        raise ProxyError("truncated SOCKS5 request")
    kind = data[3]
    if kind == AddressType.IPV4:
        if len(data) < 10:
            raise ProxyError("truncated SOCKS5 request")
        host = str(ipaddress.IPv4Address(data[4:8]))
        port = int.from_bytes(data[8:10], "big")
        return Socks5Target(AddressType.IPV4, host, port)
    if kind == AddressType.DOMAIN:
        if len(data) < 5:
            raise ProxyError("truncated SOCKS5 request")
        length = data[4]
        end = 5 + length
        if len(data) < end + 2:
            raise ProxyError("truncated SOCKS5 request")
        try:
            domain = data[5:end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProxyError(exc) from exc
        return Socks5Target(AddressType.DOMAIN, domain, int.from_bytes(data[end : end + 2], "big"))
    raise UnsupportedAddressType(f"unsupported address type: {kind}")


async def _resolve_ipv4(host: str, port: int) -> tuple[str, int]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise ProxyError(exc) from exc
    if not infos:
        raise ProxyError("failed to resolve an IPv4 address")
    address = infos[0][4]
    return address[0], address[1]


async def _relay(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while chunk := await reader.read(BUFFER_SIZE):
        writer.write(chunk)
        await writer.drain()
    if writer.can_write_eof():
        writer.write_eof()


async def handle_socks5_client(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> None:
    """Negotiate a SOCKS5 session and relay it to the requested destination."""
    try:
        greeting = await reader.read(BUFFER_SIZE)
        logger.debug("greeting %r", greeting)
        writer.write(NO_AUTHENTICATION)
        await writer.drain()
        request = await reader.read(BUFFER_SIZE)
        logger.debug("request %r", request)
    except OSError as exc:
        raise ProxyError(exc) from exc

    try:
        target = parse_socks5_request(request)
    except UnsupportedAddressType:
        writer.write(REPLY_ADDRESS_TYPE_NOT_SUPPORTED)
        await writer.drain()
        raise
    host, port = target.host, target.port
    if target.address_type is AddressType.DOMAIN:
        host, port = await _resolve_ipv4(host, port)
    logger.debug("connecting to %s:%d", host, port)

    try:
        out_reader, out_writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        writer.write(REPLY_CONNECTION_REFUSED)
        await writer.drain()
        raise ProxyError(exc) from exc

    try:
        writer.write(REPLY_SUCCEEDED)
        await writer.drain()
        results = await asyncio.gather(
            _relay(reader, out_writer), _relay(out_reader, writer), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("%s", result)
    finally:
        out_writer.close()
        with contextlib.suppress(Exception):
            await out_writer.wait_closed()


async def start_socks5_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Serve SOCKS5 clients forever."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.debug("new connection from %s", writer.get_extra_info("peername"))
        try:
            await handle_socks5_client(reader, writer)
        except Exception as exc:
            logger.error("%s", exc)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    try:
        server = await asyncio.start_server(handle, host, port)
    except OSError as exc:
        raise ProxyError(exc) from exc
    async with server:
        bound_host, bound_port = server.sockets[0].getsockname()[:2]
        logger.info("SOCKS5 server listening on %s:%d", bound_host, bound_port)
        await server.serve_forever()