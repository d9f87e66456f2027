"""Reassembly of captured TCP chunks into HTTP messages."""

from __future__ import annotations

from dataclasses import dataclass, field

from .httpdata import HttpData, HttpMethod, StreamDirection

_RESPONSE_START = b"HTTP/1.1"


@dataclass(frozen=True)
class ProxyData:
    """One chunk of bytes seen on a proxied connection."""

    direction: StreamDirection
    data: bytes
    stream_id: str

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class HttpTcpData:
    """Collects the chunks of one connection and splits them into messages.

    A buffered message is parsed once the next chunk in the same direction
    starts a new message.
    """

    stream_id: str = ""
    requests: list[HttpData] = field(default_factory=list)
    responses: list[HttpData] = field(default_factory=list)
    _req_raw: bytearray = field(default_factory=bytearray, init=False, repr=False)
    _res_raw: bytearray = field(default_factory=bytearray, init=False, repr=False)

    @property
    def pending_request(self) -> bytes:
        return bytes(self._req_raw)

    @property
    def pending_response(self) -> bytes:
        return bytes(self._res_raw)

    def push(self, pd: ProxyData) -> None:
        """Add a chunk; raises ProxyError if a finished message fails to parse."""
        if pd.direction is StreamDirection.CLIENT_TO_SERVER:
            self._push_request(pd.data)
        else:
            self._push_response(pd.data)

    def _push_request(self, data: bytes) -> None:
        if self._req_raw and data.startswith(tuple(HttpMethod.method_bytes())):
            parsed = HttpData.from_bytes(bytes(self._req_raw), StreamDirection.CLIENT_TO_SERVER)
            self.requests.append(parsed)
            self._req_raw = bytearray()
        self._req_raw.extend(data)

    def _push_response(self, data: bytes) -> None:
        if self._res_raw and data.startswith(_RESPONSE_START):
            parsed = HttpData.from_bytes(bytes(self._res_raw), StreamDirection.SERVER_TO_CLIENT)
            self.responses.append(parsed)
            self._res_raw = bytearray()
        self._res_raw.extend(data)