"""Proxy server entry point, logging setup and traffic collection."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .errors import ProxyError
from .proxy import ProxyStream
from .tcpdata import HttpTcpData, ProxyData

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 7090
DEFAULT_LOG_PATH = Path("target/log/proxy.log")
QUEUE_SIZE = 1024
LOG_FORMAT = "%(asctime)s [%(filename)s:%(lineno)d] %(levelname)-6s %(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def init_logging(log_path: str | Path = DEFAULT_LOG_PATH) -> list[logging.Handler]:
    """Log everything to the console and to *log_path*; return the handlers added."""
    path = Path(log_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        raise ProxyError(exc) from exc
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(), file_handler]
    root = logging.getLogger()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    return handlers


async def receive_data(
    queue: asyncio.Queue, data: dict[str, HttpTcpData] | None = None
) -> dict[str, HttpTcpData]:
    """Feed captured chunks into per-stream collectors until ``None`` arrives."""
    streams: dict[str, HttpTcpData] = {} if data is None else data
    while (pd := await queue.get()) is not None:
        chunk: ProxyData = pd
        tcp_data = streams.get(chunk.stream_id)
        if tcp_data is None:
            tcp_data = streams[chunk.stream_id] = HttpTcpData(stream_id=chunk.stream_id)
        try:
            tcp_data.push(chunk)
        except ProxyError as exc:
            logger.error("%s", exc)
    return streams


async def start_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Accept proxy clients forever, each on its own task."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
    collector = asyncio.create_task(receive_data(queue))

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.debug("new connection from %s", writer.get_extra_info("peername"))
        try:
            await ProxyStream(reader, writer, queue).start()
        except Exception as exc:
            logger.error("%s", exc)

    try:
        try:
            server = await asyncio.start_server(handle, host, port)
        except OSError as exc:
            raise ProxyError(exc) from exc
        async with server:
            bound_host, bound_port = server.sockets[0].getsockname()[:2]
            logger.info("listening for TCP connections on %s:%d", bound_host, bound_port)
            await server.serve_forever()
    finally:
        collector.cancel()


def main(argv: list[str] | None = None) -> int:
    """Run the intercepting proxy from the command line."""
    parser = argparse.ArgumentParser(prog="mitmtap", description="Intercepting HTTP/HTTPS proxy.")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--log-file", type=Path, default=DEFAULT_LOG_PATH)
    args = parser.parse_args(argv)

    try:
        init_logging(args.log_file)
        asyncio.run(start_server(args.host, args.port))
    except KeyboardInterrupt:
        return 0
    except ProxyError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0