import asyncio
import contextlib
import logging
import socket

import pytest

from mitmtap.httpdata import HttpMethod, StreamDirection
from mitmtap.server import init_logging, main, receive_data, start_server
from mitmtap.tcpdata import HttpTcpData, ProxyData

REQUEST = b"GET / HTTP/1.1\r\nHost: a.example.com\r\n\r\n"
RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nhi"


def _chunk(data, stream_id="s1", direction=StreamDirection.CLIENT_TO_SERVER):
    return ProxyData(direction, data, stream_id)


def _closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_receive_data_groups_by_stream():
    queue = asyncio.Queue()
    for pd in (_chunk(REQUEST), _chunk(REQUEST, "s2"), _chunk(REQUEST), None):
        queue.put_nowait(pd)
    streams = await receive_data(queue)
    assert sorted(streams) == ["s1", "s2"]
    assert len(streams["s1"].requests) == 1
    assert streams["s1"].requests[0].header.method == HttpMethod.GET.value
    assert streams["s1"].pending_request == REQUEST
    assert streams["s2"].requests == []
    assert streams["s2"].stream_id == "s2"


@pytest.mark.asyncio
async def test_receive_data_uses_given_mapping():
    existing = {"s1": HttpTcpData(stream_id="s1")}
    queue = asyncio.Queue()
    queue.put_nowait(_chunk(REQUEST))
    queue.put_nowait(None)
    streams = await receive_data(queue, existing)
    assert streams is existing
    assert existing["s1"].pending_request == REQUEST


@pytest.mark.asyncio
async def test_receive_data_logs_parse_errors(caplog):
    queue = asyncio.Queue()
    for pd in (_chunk(b"garbage"), _chunk(REQUEST), _chunk(REQUEST, "s2"), None):
        queue.put_nowait(pd)
    with caplog.at_level(logging.ERROR, logger="mitmtap.server"):
        streams = await receive_data(queue)
    assert streams["s1"].requests == []
    assert streams["s2"].pending_request == REQUEST
    assert any(record.levelno == logging.ERROR for record in caplog.records)


def test_init_logging_writes_file(tmp_path):
    log_path = tmp_path / "log" / "proxy.log"
    root = logging.getLogger()
    level = root.level
    handlers = init_logging(log_path)
    try:
        logging.getLogger("mitmtap.check").info("hello from the proxy")
        for handler in handlers:
            handler.flush()
        content = log_path.read_text(encoding="utf-8")
    finally:
        for handler in handlers:
            root.removeHandler(handler)
            handler.close()
        root.setLevel(level)
    assert "hello from the proxy" in content
    assert "mitmtap.check" in content
    assert len(handlers) == 2


def test_main_rejects_bad_port():
    with pytest.raises(SystemExit) as info:
        main(["--port", "not-a-port"])
    assert info.value.code == 2


@contextlib.asynccontextmanager
async def _upstream(received):
    async def handle(reader, writer):
        received.append(await reader.readuntil(b"\r\n\r\n"))
        writer.write(RESPONSE)
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


async def _exchange(addr, request):
    reader, writer = await asyncio.open_connection(*addr)
    writer.write(request)
    await writer.drain()
    writer.write_eof()
    response = await asyncio.wait_for(reader.read(), 5)
    writer.close()
    return response


@pytest.mark.asyncio
async def test_start_server_proxies_requests():
    received = []
    port = _closed_port()
    task = asyncio.create_task(start_server("127.0.0.1", port))
    try:
        await _wait_listening(port, task)
        addr = ("127.0.0.1", port)
        async with _upstream(received) as up_port:
            bad = await _exchange(addr, b"nonsense\r\n\r\n")
            request = b"GET http://127.0.0.1:%d/page HTTP/1.1\r\nHost: h\r\n\r\n" % up_port
            response = await _exchange(addr, request)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    assert bad == b""
    assert response == RESPONSE
    assert received == [b"GET /page HTTP/1.1\r\nHost: h\r\n\r\n"]