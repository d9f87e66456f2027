# mitmtap

mitmtap is an intercepting proxy built on asyncio.

- Plain HTTP requests that use an absolute URI (`GET http://host[:port]/path ...`)
  go to the host named in the URI. The scheme and host are removed from the
  request line before it is sent on.
- For `CONNECT host:port` requests the proxy answers `HTTP/1.1 200 OK`. It then
  ends the client's TLS session with a certificate made for that host and
  signed by its own root CA. It opens a separate, verified TLS session to the
  real server.

Every chunk relayed in either direction is put on a queue. A collector task
joins the chunks of each connection back into HTTP requests and responses.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Running the proxy

```
mitmtap [--host HOST] [--port PORT] [--log-file PATH]
```

| Option       | Default               |
|--------------|-----------------------|
| `--host`     | `0.0.0.0`             |
| `--port`     | `7090`                |
| `--log-file` | `target/log/proxy.log`|

Log records at every level go to the console and to the log file. Point your
browser's or system's HTTP and HTTPS proxy at the listening address. Stop the
proxy with Ctrl-C.

### Root certificate

HTTPS interception needs a root CA. Create one with `mitmtap.certs.gen_ca`.
It writes `sca.pem`, `sca.der` and `sca.key` into the directory you give. The
certificate is valid for one year.

```python
from mitmtap.certs import gen_ca

pem_path, der_path, key_path = gen_ca(".")
```

The `mitmtap` command reads `sca.pem` and `sca.key` from the current working
directory. Install `sca.pem` (or `sca.der`) as a trusted root on the client
machine. Certificates made for each host are cached in `target/tmp/certs/` as
`<host>.pem` and `<host>.key`, so each host needs only one key generation.

## Library use

```python
from mitmtap.certs import gen_cert_for_sni
from mitmtap.httpdata import HttpData, StreamDirection
from mitmtap.tcpdata import HttpTcpData, ProxyData

cert_pem, key_pem = gen_cert_for_sni("www.example.com", "sca.pem", "sca.key")

message = HttpData.from_bytes(
    b"GET /index.html HTTP/1.1\r\nHost: www.example.com\r\n\r\n",
    StreamDirection.CLIENT_TO_SERVER,
)
print(message.header.method, message.header.uri, message.header.keys)

collector = HttpTcpData(stream_id="example")
collector.push(ProxyData(StreamDirection.CLIENT_TO_SERVER, b"GET / HTTP/1.1\r\n\r\n", "example"))
collector.push(ProxyData(StreamDirection.CLIENT_TO_SERVER, b"GET /next HTTP/1.1\r\n\r\n", "example"))
print(len(collector.requests))  # 1; the second request is still pending
```

Other entry points:

- `mitmtap.proxy`: `parse_http_target` and `parse_connect_target` read the
  destination from a first request. `gen_context_for_sni` builds a server
  `ssl.SSLContext` for a host. `ProxyStream` handles a single client
  connection.
- `mitmtap.server`: `init_logging`, `receive_data` (the queue collector),
  `start_server` and `main`.
- `mitmtap.socks5`: `parse_socks5_request`, `handle_socks5_client` and
  `start_socks5_server`. These make up a SOCKS5 CONNECT relay without
  authentication. It accepts IPv4 addresses and domain names only, and it
  resolves domains to IPv4. The relay does not inspect or record the traffic.
- `mitmtap.errors.ProxyError` is raised for every failure the package reports.

## Limitations

- The captured messages are held in memory only. Nothing writes them to disk
  or shows them; a message that fails to parse is only logged as an error.
- Response parsing knows only the status codes 200 and 304. Only chunks that
  begin with `HTTP/1.1` count as the start of a new response.
- A message is parsed only once the next message in the same direction begins.
  The last request and response of a connection stay pending.
- The `mitmtap` command does not start the SOCKS5 server. Run
  `start_socks5_server` yourself, for example with
  `asyncio.run(start_socks5_server())`. It listens on `127.0.0.1:7091` by
  default.