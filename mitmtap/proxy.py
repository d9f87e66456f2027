"""Intercepting HTTP/HTTPS proxy connection handling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import ssl
import uuid
from pathlib import Path
from typing import Iterator, NamedTuple

from .certs import CA_CERT_FILE, CA_KEY_FILE, gen_cert_for_sni
from .errors import ProxyError
from .httpdata import StreamDirection
from .tcpdata import ProxyData

logger = logging.getLogger(__name__)

BUFFER_SIZE = 4096
DEFAULT_HTTP_PORT = 80
DEFAULT_CERT_DIR = Path("target/tmp/certs")
HTTP_PREFIX = b"http://"
CONNECT_PREFIX = b"CONNECT"
CONNECT_ESTABLISHED = b"HTTP/1.1 200 OK\r\n\r\n"
_PORT = re.compile(r"\+?[0-9]+")


class HttpTarget(NamedTuple):
    """Where a plain HTTP request goes and the bytes to forward to it."""

    host: str
    port: int
    payload: bytes


class ConnectTarget(NamedTuple):
    """The destination named by a CONNECT request."""

    address: str
    sni: str
    host: str
    port: int


@contextlib.contextmanager
def _as_proxy_error() -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise ProxyError(exc) from exc


def _parse_port(text: str) -> int:
    if not _PORT.fullmatch(text) or int(text) > 0xFFFF:
        raise ProxyError(f"invalid port: {text!r}")
    return int(text)


def regex_find(rex: str, context: str) -> list[str]:
    """Collect matches of *rex* in *context*.

    For a pattern with groups every group of every match is returned;
    otherwise the whole matches are.
    """
    try:
        pattern = re.compile(rex)
    except re.error as exc:
        raise ProxyError(exc) from exc
    found: list[str] = []
    for match in pattern.finditer(context):
        if pattern.groups:
            found.extend(group or "" for group in match.groups())
        else:
            found.append(match.group(0))
    return found


def parse_http_target(data: bytes) -> HttpTarget:
    """Extract the upstream address from an absolute-URI request.

    The scheme and authority are cut out of the request so that the
    forwarded payload carries an origin-form target.
    """
    start = data.find(HTTP_PREFIX)
    if start < 0:
        raise ProxyError("failed to find the HTTP address")
    host_start = start + len(HTTP_PREFIX)
    end = data.find(b"/", host_start)
    if end < 0:
        raise ProxyError("failed to find the HTTP address")
    try:
        addr = data[host_start:end].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProxyError(exc) from exc
    host = addr.split(":")[0]
    port = _parse_port(addr.rsplit(":", 1)[1]) if ":" in addr else DEFAULT_HTTP_PORT
    logger.debug("upstream %s:%d", host, port)
    return HttpTarget(host, port, data[:start] + data[end:])


def parse_connect_target(data: bytes) -> ConnectTarget:
    """Extract the destination from a ``CONNECT host:port`` request."""
    try:
        info = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProxyError(exc) from exc
    found = regex_find("CONNECT (.*?) ", info)
    if not found:
        raise ProxyError("failed to find the HTTPS address")
    address = found[0]
    sni = address.split(":")[0]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ProxyError(f"missing port in CONNECT address: {address!r}")
    return ConnectTarget(address, sni, host, _parse_port(port))


def gen_context_for_sni(
    sni: str,
    cert_dir: str | Path = DEFAULT_CERT_DIR,
    ca: str | Path = CA_CERT_FILE,
    key: str | Path = CA_KEY_FILE,
) -> ssl.SSLContext:
    """Build a server TLS context presenting a certificate for *sni*.

    Issued certificates are cached in *cert_dir* as ``<sni>.pem`` and
    ``<sni>.key`` and reused on later calls.
    """
    directory = Path(cert_dir)
    crt_path = directory / f"{sni}.pem"
    key_path = directory / f"{sni}.key"
    with _as_proxy_error():
        if not crt_path.exists():
            logger.debug("issuing certificate for %s", sni)
            cert_pem, key_pem = gen_cert_for_sni(sni, ca, key)
            directory.mkdir(parents=True, exist_ok=True)
            crt_path.write_text(cert_pem, encoding="ascii")
            key_path.write_text(key_pem, encoding="ascii")
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(crt_path, key_path)
    return context


class ProxyStream:
    """One client connection to the proxy.

    Every chunk relayed after the initial request is published to *queue*
    as a :class:`ProxyData` tagged with this stream's id.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        queue: asyncio.Queue,
        *,
        cert_dir: str | Path = DEFAULT_CERT_DIR,
        ca_cert: str | Path = CA_CERT_FILE,
        ca_key: str | Path = CA_KEY_FILE,
    ) -> None:
        self.stream_id = str(uuid.uuid4())
        self._reader = reader
        self._writer = writer
        self._queue = queue
        self._cert_dir = cert_dir
        self._ca_cert = ca_cert
        self._ca_key = ca_key

    async def start(self) -> None:
        """Read the first request and proxy the connection until it ends."""
        try:
            with _as_proxy_error():
                data = await self._reader.read(BUFFER_SIZE)
            if data.startswith(CONNECT_PREFIX):
                await self._handle_https(data)
            else:
                await self._handle_http(data)
        finally:
            self._writer.close()
            with contextlib.suppress(Exception):
                await self._writer.wait_closed()

    async def _handle_http(self, data: bytes) -> None:
        target = parse_http_target(data)
        with _as_proxy_error():
            out_reader, out_writer = await asyncio.open_connection(target.host, target.port)
            out_writer.write(target.payload)
            await out_writer.drain()
        await self._copy_io(out_reader, out_writer)

    async def _handle_https(self, data: bytes) -> None:
        target = parse_connect_target(data)
        with _as_proxy_error():
            self._writer.write(CONNECT_ESTABLISHED)
            await self._writer.drain()
        logger.debug("HTTPS address %s; SNI %s", target.address, target.sni)
        context = gen_context_for_sni(target.sni, self._cert_dir, self._ca_cert, self._ca_key)
        with _as_proxy_error():
            await self._writer.start_tls(context)
            out_reader, out_writer = await asyncio.open_connection(
                target.host,
                target.port,
                ssl=ssl.create_default_context(),
                server_hostname=target.sni,
            )
        await self._copy_io(out_reader, out_writer)

    async def _copy(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        direction: StreamDirection,
    ) -> None:
        while chunk := await reader.read(BUFFER_SIZE):
            writer.write(chunk)
            await writer.drain()
            await self._queue.put(ProxyData(direction, chunk, self.stream_id))
        if writer.can_write_eof():
            writer.write_eof()

    async def _copy_io(
        self, out_reader: asyncio.StreamReader, out_writer: asyncio.StreamWriter
    ) -> None:
        directions = (StreamDirection.CLIENT_TO_SERVER, StreamDirection.SERVER_TO_CLIENT)
        try:
            results = await asyncio.gather(
                self._copy(self._reader, out_writer, directions[0]),
                self._copy(out_reader, self._writer, directions[1]),
                return_exceptions=True,
            )
            for direction, result in zip(directions, results):
                if isinstance(result, Exception):
                    logger.error("%s%s", direction, result)
        finally:
            out_writer.close()
            with contextlib.suppress(Exception):
                await out_writer.wait_closed()