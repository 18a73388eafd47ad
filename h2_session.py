"""
HTTP/2 session layered on an already negotiated TLS tunnel.

Http2Session never dials: it wraps httpcore's HTTP/2 connection around the
TLSSession stream it is given. TunnelTransport exposes that session to
httpx.AsyncClient so requests are issued with the regular httpx API.
"""

import contextlib
from typing import AsyncIterator, Optional

import h2.errors
import h2.events
import h2.exceptions
import httpcore
import httpx

from tunnel import TLSSession
from tunnel_errors import Http2SessionError, StreamError

# Connection-specific headers are illegal in HTTP/2
_CONNECTION_HEADERS = {b"connection", b"keep-alive", b"proxy-connection", b"transfer-encoding", b"upgrade"}


def _error_code_name(code) -> str:
    try:
        return h2.errors.ErrorCodes(code).name
    except ValueError:
        return f"0x{code:x}"


@contextlib.contextmanager
def map_h2_errors():
    """Translates httpcore/h2 failures into StreamError or Http2SessionError."""
    try:
        yield
    except httpcore.RemoteProtocolError as e:
        event = e.args[0] if e.args else None
        if isinstance(event, h2.events.StreamReset):
            code = _error_code_name(event.error_code)
            raise StreamError(f"stream {event.stream_id} reset by peer", detail=code) from e
        if isinstance(event, h2.events.ConnectionTerminated):
            code = _error_code_name(event.error_code)
            raise Http2SessionError("server closed the HTTP/2 session (GOAWAY)",
                                    detail=f"GOAWAY {code}", label="GOAWAY") from e
        raise Http2SessionError("HTTP/2 session failed", detail=str(e)[:60]) from e
    except (httpcore.LocalProtocolError, h2.exceptions.ProtocolError) as e:
        raise Http2SessionError("HTTP/2 protocol error", detail=str(e)[:60]) from e
    except (httpcore.ReadTimeout, httpcore.WriteTimeout) as e:
        raise Http2SessionError("HTTP/2 session timed out", detail="Read timeout",
                                timeout=True, label="TIMEOUT") from e
    except (httpcore.ReadError, httpcore.WriteError) as e:
        raise Http2SessionError("HTTP/2 connection lost", detail=str(e)[:60] or type(e).__name__,
                                label="H2 RESET") from e
    except httpcore.ConnectionNotAvailable as e:
        raise Http2SessionError("HTTP/2 session no longer accepts streams",
                                detail="Session closed") from e


# ============================================================================ Session

class Http2Session:
    """One HTTP/2 connection over a TLS tunnel. Owns the TLS session."""

    def __init__(self, tls_session: TLSSession, port: int = 443, keepalive_expiry: Optional[float] = None):
        if not tls_session.is_h2:
            raise ValueError("HTTP/2 session requires a TLS session negotiated to h2")
        self.tls_session = tls_session
        self.host = tls_session.server_hostname
        self.port = port
        self.origin = httpcore.Origin(b"https", self.host.encode("idna"), port)
        self.connection = httpcore.AsyncHTTP2Connection(
            origin=self.origin,
            stream=tls_session.stream,
            keepalive_expiry=keepalive_expiry,
        )
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed or self.connection.is_closed()

    async def open_stream(self, request: httpcore.Request) -> httpcore.Response:
        """Sends request headers/body on a new stream and waits for response headers."""
        if self._closed:
            raise Http2SessionError("HTTP/2 session already closed", detail="Session closed")
        with map_h2_errors():
            return await self.connection.handle_async_request(request)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A terminated connection has already closed its stream
        if not self.connection.is_closed():
            await self.connection.aclose()

    async def __aenter__(self) -> "Http2Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


# ============================================================================ httpx transport

class TunnelResponseStream(httpx.AsyncByteStream):
    def __init__(self, stream):
        self._stream = stream

    async def __aiter__(self) -> AsyncIterator[bytes]:
        with map_h2_errors():
            async for part in self._stream:
                yield part

    async def aclose(self) -> None:
        if hasattr(self._stream, "aclose"):
            await self._stream.aclose()


class TunnelTransport(httpx.AsyncBaseTransport):
    """httpx transport that sends every request over one tunneled HTTP/2 session.

    Only the tunnel's own origin can be reached; closing the transport closes
    the session and the tunnel beneath it.
    """

    def __init__(self, session: Http2Session):
        self.session = session

    def _check_origin(self, url: httpx.URL) -> None:
        port = url.port or 443
        if url.scheme != "https" or url.raw_host != self.session.origin.host or port != self.session.port:
            raise ValueError(
                f"tunnel reaches only https://{self.session.host}:{self.session.port}, not {url}"
            )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self._check_origin(request.url)
        assert isinstance(request.stream, httpx.AsyncByteStream)

        headers = [
            (name, value)
            for name, value in request.headers.raw
            if name.lower() not in _CONNECTION_HEADERS
        ]
        req = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=headers,
            content=request.stream,
            extensions=request.extensions,
        )
        resp = await self.session.open_stream(req)

        return httpx.Response(
            status_code=resp.status,
            headers=resp.headers,
            stream=TunnelResponseStream(resp.stream),
            extensions=resp.extensions,
        )

    async def aclose(self) -> None:
        await self.session.aclose()
