import asyncio
import contextlib
import socket

import pytest

from mitmtap.errors import ProxyError
from mitmtap.socks5 import (
    AddressType,
    UnsupportedAddressType,
    handle_socks5_client,
    parse_socks5_request,
    start_socks5_server,
)

SUCCEEDED = bytes([5, 0, 0, 1, 127, 0, 0, 1, 0, 80])
REFUSED = bytes([5, 5, 0, 1, 127, 0, 0, 1, 0, 80])
NOT_SUPPORTED = bytes([5, 8, 0, 1, 127, 0, 0, 1, 0, 80])


def _ipv4_request(port):
    return bytes([5, 1, 0, 1, 127, 0, 0, 1]) + port.to_bytes(2, "big")


def _closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_parse_ipv4_request():
    port = 8080
    target = parse_socks5_request(_ipv4_request(port))
    assert target.address_type is AddressType.IPV4
    assert (target.host, target.port) == ("127.0.0.1", port)


def test_parse_domain_request():
    domain = b"localhost"
    port = 443
    data = bytes([5, 1, 0, 3, len(domain)]) + domain + port.to_bytes(2, "big")
    target = parse_socks5_request(data)
    assert target.address_type is AddressType.DOMAIN
    assert (target.host, target.port) == ("localhost", port)


def test_parse_unsupported_address_type():
    data = bytes([5, 1, 0, 4]) + bytes(18)
    with pytest.raises(UnsupportedAddressType):
        parse_socks5_request(data)


@pytest.mark.parametrize(
    "data",
    [b"", bytes([5, 1, 0]), bytes([5, 1, 0, 1, 127, 0]), bytes([5, 1, 0, 3, 9]) + b"local"],
)
def test_parse_truncated_request(data):
    with pytest.raises(ProxyError):
        parse_socks5_request(data)


@contextlib.asynccontextmanager
async def _echo_server():
    async def handle(reader, writer):
        while chunk := await reader.read(1024):
            writer.write(chunk)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    async with server:
        yield server.sockets[0].getsockname()[1]


async def _wait_listening(port, task):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5
    while True:
        if task.done():
            task.result()
        try:
            _, writer = await asyncio.open_connection("127.0.0.1", port)
        except OSError:
            if loop.time() > deadline:
                raise
            await asyncio.sleep(0.01)
            continue
        writer.close()
        return


@contextlib.asynccontextmanager
async def _socks_server():
    port = _closed_port()
    task = asyncio.create_task(start_socks5_server("127.0.0.1", port))
    try:
        await _wait_listening(port, task)
        yield ("127.0.0.1", port)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _negotiate(addr, request):
    reader, writer = await asyncio.open_connection(*addr)
    return await _negotiate_on(reader, writer, request)


async def _negotiate_on(reader, writer, request):
    writer.write(bytes([5, 1, 0]))
    await writer.drain()
    method = await asyncio.wait_for(reader.readexactly(2), 5)
    writer.write(request)
    await writer.drain()
    reply = await asyncio.wait_for(reader.readexactly(10), 5)
    return reader, writer, method, reply


@pytest.mark.asyncio
async def test_relays_to_ipv4_target():
    async with _echo_server() as echo_port, _socks_server() as addr:
        reader, writer, method, reply = await _negotiate(addr, _ipv4_request(echo_port))
        writer.write(b"ping")
        await writer.drain()
        echoed = await asyncio.wait_for(reader.readexactly(4), 5)
        writer.write_eof()
        rest = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    assert method == bytes([5, 0])
    assert reply == SUCCEEDED
    assert echoed == b"ping"
    assert rest == b""


@pytest.mark.asyncio
async def test_relays_to_domain_target():
    async with _echo_server() as echo_port, _socks_server() as addr:
        request = bytes([5, 1, 0, 3, 9]) + b"localhost" + echo_port.to_bytes(2, "big")
        reader, writer, _, reply = await _negotiate(addr, request)
        writer.write(b"data")
        await writer.drain()
        echoed = await asyncio.wait_for(reader.readexactly(4), 5)
        writer.close()
    assert reply == SUCCEEDED
    assert echoed == b"data"


@pytest.mark.asyncio
async def test_unsupported_address_type_reply():
    async with _socks_server() as addr:
        reader, writer, _, reply = await _negotiate(addr, bytes([5, 1, 0, 4]) + bytes(18))
        rest = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    assert reply == NOT_SUPPORTED
    assert rest == b""


@pytest.mark.asyncio
async def test_connection_refused_reply():
    async with _socks_server() as addr:
        reader, writer, _, reply = await _negotiate(addr, _ipv4_request(_closed_port()))
        writer.close()
    assert reply == REFUSED


@pytest.mark.asyncio
async def test_handle_client_raises_on_unsupported_type():
    client_sock, proxy_sock = socket.socketpair()
    c_reader, c_writer = await asyncio.open_connection(sock=client_sock)
    p_reader, p_writer = await asyncio.open_connection(sock=proxy_sock)
    task = asyncio.create_task(handle_socks5_client(p_reader, p_writer))
    try:
        _, _, method, reply = await _negotiate_on(
            c_reader, c_writer, bytes([5, 1, 0, 4]) + bytes(18)
        )
        (outcome,) = await asyncio.wait_for(
            asyncio.gather(task, return_exceptions=True), 5
        )
    finally:
        p_writer.close()
        c_writer.close()
    assert method == bytes([5, 0])
    assert reply == NOT_SUPPORTED
    assert isinstance(outcome, UnsupportedAddressType)
    assert "unsupported address type: 4" in str(outcome)