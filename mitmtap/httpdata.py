"""Parsing of captured HTTP/1.x messages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from .errors import ProxyError

logger = logging.getLogger(__name__)

HTTP_HEAD_BODY_GAP = b"\r\n\r\n"
_INTEGER = re.compile(r"[+-]?[0-9]+")


class StreamDirection(Enum):
    """Which way captured bytes were flowing."""

    CLIENT_TO_SERVER = "ClientToServer"
    SERVER_TO_CLIENT = "ServerToClient"

    def __str__(self) -> str:
        return self.value


class HttpVersion(Enum):
    HTTP_10 = "HTTP/1.0"
    HTTP_11 = "HTTP/1.1"
    HTTP_20 = "HTTP/2.0"
    HTTP_30 = "HTTP/3.0"

    @classmethod
    def from_stream_raw(cls, ver: str) -> HttpVersion:
        """Parse a version token such as ``HTTP/1.1``."""
        try:
            return cls(ver)
        except ValueError:
            raise ProxyError(f"unsupported HTTP version: {ver!r}") from None


class HttpStatus(IntEnum):
    OK = 200
    NOT_MODIFIED = 304

    @classmethod
    def from_stream_raw(cls, code: str) -> HttpStatus:
        """Parse a status code token; only known codes are accepted."""
        if not _INTEGER.fullmatch(code):
            raise ProxyError(f"invalid HTTP status code: {code!r}")
        try:
            return cls(int(code))
        except ValueError:
            raise ProxyError(f"unknown HTTP status code: {code}") from None


def _decode_header(raw: bytes) -> str:
    try:
        text = bytes(raw).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProxyError(exc) from exc
    text = text.replace("\r\n", "\n")
    logger.debug("%s", text)
    return text


def _first_line(text: str) -> list[str]:
    if not text:
        raise ProxyError("malformed HTTP header")
    return text.split("\n", 1)[0].split(" ")


def _fields(text: str) -> dict[str, str]:
    keys: dict[str, str] = {}
    for line in text.split("\n")[1:]:
        key, _, value = line.partition(": ")
        keys[key] = value
    return keys


@dataclass
class HttpHeader:
    method: str = ""
    uri: str = ""
    version: HttpVersion = HttpVersion.HTTP_10
    status: HttpStatus = HttpStatus.OK
    keys: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_client(cls, raw: bytes) -> HttpHeader:
        """Parse a request header block (without the blank line)."""
        text = _decode_header(raw)
        items = iter(_first_line(text))
        method = next(items)
        uri = next(items, None)
        if uri is None:
            raise ProxyError("missing request URI")
        version = next(items, None)
        if version is None:
            raise ProxyError("missing request version")
        return cls(
            method=method,
            uri=uri,
            version=HttpVersion.from_stream_raw(version),
            keys=_fields(text),
        )

    @classmethod
    def from_server(cls, raw: bytes) -> HttpHeader:
        """Parse a response header block (without the blank line)."""
        text = _decode_header(raw)
        items = iter(_first_line(text))
        version = HttpVersion.from_stream_raw(next(items))
        code = next(items, None)
        if code is None:
            raise ProxyError("missing response status code")
        return cls(
            version=version,
            status=HttpStatus.from_stream_raw(code),
            keys=_fields(text),
        )


@dataclass
class HttpBody:
    raw: bytes = b""


@dataclass
class HttpData:
    header: HttpHeader
    body: HttpBody

    @classmethod
    def from_bytes(cls, bs: bytes, direction: StreamDirection) -> HttpData:
        """Split a raw message into header and body and parse the header."""
        bs = bytes(bs)
        pos = bs.find(HTTP_HEAD_BODY_GAP)
        if pos < 0:
            raise ProxyError("malformed HTTP data: no end of header")
        if direction is StreamDirection.CLIENT_TO_SERVER:
            header = HttpHeader.from_client(bs[:pos])
        else:
            header = HttpHeader.from_server(bs[:pos])
        return cls(header=header, body=HttpBody(bs[pos + len(HTTP_HEAD_BODY_GAP):]))


class HttpMethod(Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    HEAD = "HEAD"
    CONNECT = "CONNECT"
    TRACE = "TRACE"
    PATCH = "PATCH"
    OPTIONS = "OPTIONS"
    DELETE = "DELETE"

    @classmethod
    def method_bytes(cls) -> list[bytes]:
        """Return every method name as bytes, in declaration order."""
        return [method.value.encode("ascii") for method in cls]