"""
CONNECT tunnel through an HTTP proxy and the TLS upgrade on top of it.

The raw stream is owned by exactly one layer at a time: connect_proxy()
hands it to establish_tunnel(), which hands it to upgrade_tls(). Whichever
layer fails closes the stream before raising.
"""

import re
import ssl
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import httpcore

import config
from tunnel_errors import (
    ProtocolNotNegotiated,
    TlsHandshakeError,
    TransportError,
    TunnelRejected,
    classify_tls_error,
    classify_transport_error,
)

READ_CHUNK_SIZE = config.READ_CHUNK_SIZE
MAX_CONNECT_HEADER_BYTES = config.MAX_CONNECT_HEADER_BYTES

HEADER_TERMINATOR = b"\r\n\r\n"

# Version token, then exactly three digits, then a space or end of line
_STATUS_LINE_RE = re.compile(r"^HTTP/(\d(?:\.\d)?) (\d{3})(?: (.*))?$")


def format_authority(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}"


# ============================================================================ Models

@dataclass(frozen=True)
class TunnelRequest:
    proxy_host: str
    proxy_port: int
    target_host: str
    target_port: int = 443

    @property
    def authority(self) -> str:
        return format_authority(self.target_host, self.target_port)

    @property
    def proxy_authority(self) -> str:
        return format_authority(self.proxy_host, self.proxy_port)

    def connect_request(self) -> bytes:
        """CONNECT request line plus a single Host header."""
        return (
            f"CONNECT {self.authority} HTTP/1.1\r\n"
            f"Host: {self.authority}\r\n"
            f"\r\n"
        ).encode("ascii")


@dataclass
class TunnelResponse:
    status_line: str
    status_code: int
    raw_header_block: bytes
    reason: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status_code == 200


class TLSSession:
    """Encrypted stream over a confirmed tunnel, plus what the handshake agreed on."""

    def __init__(self, stream: httpcore.AsyncNetworkStream, server_hostname: str,
                 negotiated_protocol: Optional[str], tls_version: Optional[str] = None,
                 cipher: Optional[str] = None):
        self.stream = stream
        self.server_hostname = server_hostname
        self.negotiated_protocol = negotiated_protocol
        self.tls_version = tls_version
        self.cipher = cipher

    @property
    def is_h2(self) -> bool:
        return self.negotiated_protocol == "h2"

    async def aclose(self) -> None:
        await self.stream.aclose()


# ============================================================================ CONNECT response parsing

def parse_connect_response(raw: bytes) -> TunnelResponse:
    """Parses a complete proxy reply header block (terminator included or not).

    The status code is taken strictly from the token after the HTTP version,
    so a "200" anywhere else in the reply does not count as success.
    """
    head, sep, _ = raw.partition(HEADER_TERMINATOR)
    text = head.decode("iso-8859-1")
    lines = text.split("\r\n")
    status_line = lines[0]

    m = _STATUS_LINE_RE.match(status_line)
    if not m:
        raise TunnelRejected(
            "malformed CONNECT response status line",
            detail=f"Bad status line {status_line[:40]!r}",
            label="BAD REPLY",
        )

    headers = []
    for line in lines[1:]:
        name, colon, value = line.partition(":")
        if not colon or not name.strip():
            raise TunnelRejected(
                "malformed header in CONNECT response",
                detail=f"Bad header {line[:40]!r}",
                label="BAD REPLY",
            )
        headers.append((name.strip(), value.strip()))

    return TunnelResponse(
        status_line=status_line,
        status_code=int(m.group(2)),
        raw_header_block=head + sep,
        reason=m.group(3) or "",
        headers=headers,
    )


# ============================================================================ Phase 1: TCP + CONNECT

async def connect_proxy(
    request: TunnelRequest,
    backend: Optional[httpcore.AsyncNetworkBackend] = None,
    timeout: Optional[float] = None,
) -> httpcore.AsyncNetworkStream:
    """Opens the plain TCP connection to the proxy."""
    if backend is None:
        backend = httpcore.AnyIOBackend()
    try:
        return await backend.connect_tcp(request.proxy_host, request.proxy_port, timeout=timeout)
    except httpcore.ConnectTimeout as e:
        raise TransportError(
            f"connect to proxy {request.proxy_authority} timed out",
            detail="Connect timeout", timeout=True, label="TIMEOUT",
        ) from e
    except (httpcore.ConnectError, OSError) as e:
        label, detail = classify_transport_error(e)
        raise TransportError(
            f"cannot connect to proxy {request.proxy_authority}", detail=detail, label=label
        ) from e


async def establish_tunnel(
    stream: httpcore.AsyncNetworkStream,
    request: TunnelRequest,
    timeout: Optional[float] = None,
    max_header_bytes: int = MAX_CONNECT_HEADER_BYTES,
) -> TunnelResponse:
    """Sends CONNECT and waits for a 200 reply.

    The reply is buffered until the blank line that ends the header block,
    however the proxy fragments it. Closes the stream on any failure.
    """
    try:
        return await _connect_handshake(stream, request, timeout, max_header_bytes)
    except BaseException:
        await stream.aclose()
        raise


async def _connect_handshake(stream, request, timeout, max_header_bytes):
    deadline = time.monotonic() + timeout if timeout is not None else None

    try:
        await stream.write(request.connect_request(), timeout=timeout)
    except httpcore.WriteTimeout as e:
        raise TransportError("sending CONNECT timed out", detail="Write timeout",
                             timeout=True, label="TIMEOUT") from e
    except (httpcore.WriteError, OSError) as e:
        label, detail = classify_transport_error(e)
        raise TransportError("sending CONNECT failed", detail=detail, label=label) from e

    buffer = b""
    while True:
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TunnelRejected("timed out waiting for CONNECT response",
                                     detail="Reply timeout", timeout=True, label="TIMEOUT")

        try:
            chunk = await stream.read(READ_CHUNK_SIZE, timeout=remaining)
        except httpcore.ReadTimeout as e:
            raise TunnelRejected("timed out waiting for CONNECT response",
                                 detail="Reply timeout", timeout=True, label="TIMEOUT") from e
        except (httpcore.ReadError, OSError) as e:
            label, detail = classify_transport_error(e)
            raise TransportError("connection lost while waiting for CONNECT response",
                                 detail=detail, label=label) from e

        if not chunk:
            if buffer:
                raise TunnelRejected("proxy closed the connection mid-reply",
                                     detail="Truncated reply", label="BAD REPLY")
            raise TunnelRejected("proxy closed the connection without replying",
                                 detail="Empty reply", label="PROXY CLOSE")
        buffer += chunk

        end = buffer.find(HEADER_TERMINATOR)
        header_size = len(buffer) if end == -1 else end + len(HEADER_TERMINATOR)
        if header_size > max_header_bytes:
            raise TunnelRejected(
                f"CONNECT response header exceeds {max_header_bytes} bytes",
                detail="Oversized reply", label="BAD REPLY",
            )
        if end != -1:
            break

    response = parse_connect_response(buffer)
    if not response.ok:
        raise TunnelRejected(
            f"CONNECT rejected by proxy: {response.status_line}",
            detail=f"HTTP {response.status_code}",
            response=response,
        )

    # Nothing may follow the reply before our ClientHello
    trailing = buffer[len(response.raw_header_block):]
    if trailing:
        raise TunnelRejected(
            "proxy sent data after the CONNECT response",
            detail=f"{len(trailing)} unexpected bytes", label="BAD REPLY",
            response=response,
        )
    return response


# ============================================================================ Phase 2: TLS

def build_ssl_context(verify: bool = True, offer_http1: bool = False) -> ssl.SSLContext:
    """Client context offering h2 (and optionally http/1.1) via ALPN."""
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    ctx.set_alpn_protocols(["h2", "http/1.1"] if offer_http1 else ["h2"])
    return ctx


async def upgrade_tls(
    stream: httpcore.AsyncNetworkStream,
    server_hostname: str,
    ssl_context: ssl.SSLContext,
    timeout: Optional[float] = None,
) -> TLSSession:
    """Runs the TLS handshake over the tunnel and requires ALPN h2.

    Closes the stream on any failure, including a handshake that completes
    with some other protocol.
    """
    try:
        tls_stream = await _tls_handshake(stream, server_hostname, ssl_context, timeout)
    except BaseException:
        await stream.aclose()
        raise

    ssl_object = tls_stream.get_extra_info("ssl_object")
    negotiated = None
    tls_version = None
    cipher = None
    if ssl_object is not None:
        negotiated = ssl_object.selected_alpn_protocol()
        if hasattr(ssl_object, "version"):
            tls_version = ssl_object.version()
        if hasattr(ssl_object, "cipher"):
            cipher_info = ssl_object.cipher()
            cipher = cipher_info[0] if cipher_info else None

    session = TLSSession(tls_stream, server_hostname, negotiated, tls_version, cipher)
    if not session.is_h2:
        await session.aclose()
        raise ProtocolNotNegotiated(negotiated)
    return session


async def _tls_handshake(stream, server_hostname, ssl_context, timeout):
    try:
        return await stream.start_tls(ssl_context, server_hostname=server_hostname, timeout=timeout)
    except httpcore.ConnectTimeout as e:
        raise TlsHandshakeError(f"TLS handshake with {server_hostname} timed out",
                                detail="Handshake timeout", timeout=True, label="TIMEOUT") from e
    except (httpcore.ConnectError, ssl.SSLError, OSError) as e:
        label, detail = classify_tls_error(e)
        raise TlsHandshakeError(f"TLS handshake with {server_hostname} failed",
                                detail=detail, label=label) from e
