"""Error taxonomy of the tunneled HTTP/2 client and cause-chain classifiers."""

import errno
import socket
import ssl
from typing import Optional, Tuple

# Windows errno codes
WSAECONNRESET = 10054
WSAECONNREFUSED = 10061
WSAETIMEDOUT = 10060
WSAENETUNREACH = 10051
WSAEHOSTUNREACH = 10065
WSAECONNABORTED = 10053


# ============================================================================ Phases

class Phase:
    """Client states, in the only order they can be reached."""

    INIT = "INIT"
    TCP_CONNECTED = "TCP_CONNECTED"
    TUNNEL_CONFIRMED = "TUNNEL_CONFIRMED"
    TLS_NEGOTIATED = "TLS_NEGOTIATED"
    HTTP2_SESSION_OPEN = "HTTP2_SESSION_OPEN"
    STREAM_OPEN = "STREAM_OPEN"
    STREAM_COMPLETE = "STREAM_COMPLETE"
    CLOSED = "CLOSED"

    ORDER = (
        INIT, TCP_CONNECTED, TUNNEL_CONFIRMED, TLS_NEGOTIATED,
        HTTP2_SESSION_OPEN, STREAM_OPEN, STREAM_COMPLETE, CLOSED,
    )


# ============================================================================ Errors

class TunnelClientError(Exception):
    """Base error: knows the phase it happened in and a short detail."""

    phase = "CLIENT"
    label = "ERROR"

    def __init__(self, message: str, detail: str = "", timeout: bool = False,
                 label: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.timeout = timeout
        if label:
            self.label = label

    def __str__(self) -> str:
        if self.detail and self.detail not in self.message:
            return f"{self.message} ({self.detail})"
        return self.message


class TransportError(TunnelClientError):
    phase = "TCP"
    label = "TCP FAIL"


class TunnelRejected(TunnelClientError):
    phase = "TUNNEL"
    label = "REJECTED"

    def __init__(self, message: str, detail: str = "", timeout: bool = False,
                 label: Optional[str] = None, response=None):
        super().__init__(message, detail, timeout, label)
        self.response = response

    def __str__(self) -> str:
        # The status line already names the code
        if self.response is not None and self.response.status_line in self.message:
            return self.message
        return super().__str__()


class TlsHandshakeError(TunnelClientError):
    phase = "TLS"
    label = "TLS FAIL"


class ProtocolNotNegotiated(TunnelClientError):
    phase = "ALPN"
    label = "NO H2"

    def __init__(self, negotiated: Optional[str]):
        shown = negotiated or "none"
        super().__init__(f"server negotiated ALPN '{shown}' instead of 'h2'", detail=shown)
        self.negotiated = negotiated


class Http2SessionError(TunnelClientError):
    phase = "HTTP2"
    label = "H2 ERROR"


class StreamError(TunnelClientError):
    phase = "STREAM"
    label = "STREAM RST"


class ClientTimeout(TunnelClientError):
    phase = "CLIENT"
    label = "TIMEOUT"

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message, detail, timeout=True, label="TIMEOUT")


# ============================================================================ Cause chain helpers

def _find_cause_of_type(exc: BaseException, target_type: type, max_depth: int = 10):
    """Returns the first exception of target_type in the cause chain."""
    current = exc
    for _ in range(max_depth):
        if isinstance(current, target_type):
            return current
        nxt = current.__cause__ or current.__context__
        if nxt is None:
            break
        current = nxt
    return None


def _get_errno_from_chain(exc: BaseException, max_depth: int = 10) -> Optional[int]:
    current = exc
    for _ in range(max_depth):
        if isinstance(current, OSError) and current.errno is not None:
            return current.errno
        nxt = current.__cause__ or current.__context__
        if nxt is None:
            break
        current = nxt
    return None


def _collect_error_text(exc: BaseException, max_depth: int = 10) -> str:
    """Lower-cased text of the whole exception chain."""
    parts = []
    current = exc
    for _ in range(max_depth):
        parts.append(str(current).lower())
        nxt = current.__cause__ or current.__context__
        if nxt is None:
            break
        current = nxt
    return " | ".join(parts)


# ============================================================================ Classification

def classify_transport_error(error: BaseException) -> Tuple[str, str]:
    """Classifies a TCP-level failure into (label, detail)."""
    full_text = _collect_error_text(error)
    err_errno = _get_errno_from_chain(error)

    gai = _find_cause_of_type(error, socket.gaierror)
    if gai is not None:
        if getattr(gai, "errno", None) in (getattr(socket, "EAI_AGAIN", -3), 11002):
            return ("DNS FAIL", "DNS timeout")
        return ("DNS FAIL", "Host not found")
    if any(x in full_text for x in ["getaddrinfo failed", "name resolution",
                                     "name or service not known", "nodename nor servname"]):
        return ("DNS FAIL", "DNS error")

    if _find_cause_of_type(error, ConnectionRefusedError) is not None \
       or err_errno in (errno.ECONNREFUSED, WSAECONNREFUSED) \
       or "refused" in full_text:
        return ("REFUSED", "Connection refused")

    if _find_cause_of_type(error, ConnectionResetError) is not None \
       or err_errno in (errno.ECONNRESET, WSAECONNRESET) \
       or "connection reset" in full_text:
        return ("TCP RST", "Connection reset")

    if _find_cause_of_type(error, ConnectionAbortedError) is not None \
       or err_errno in (getattr(errno, "ECONNABORTED", 103), WSAECONNABORTED):
        return ("TCP ABORT", "Connection aborted")

    if _find_cause_of_type(error, TimeoutError) is not None \
       or err_errno in (errno.ETIMEDOUT, WSAETIMEDOUT) \
       or "timed out" in full_text or "timeout" in full_text:
        return ("TIMEOUT", "Connect timeout")

    if err_errno in (errno.ENETUNREACH, WSAENETUNREACH) or "network is unreachable" in full_text:
        return ("NET UNREACH", "Network unreachable")
    if err_errno in (errno.EHOSTUNREACH, WSAEHOSTUNREACH) or "no route to host" in full_text:
        return ("HOST UNREACH", "Host unreachable")

    return ("CONN ERR", type(error).__name__)


def classify_tls_error(error: BaseException) -> Tuple[str, str]:
    """Classifies a TLS handshake failure into (label, detail).

    Certificate problems on a proxied connection usually mean interception,
    so they are labelled MITM; alerts and truncated handshakes point at DPI.
    """
    ssl_err = _find_cause_of_type(error, ssl.SSLError)
    error_msg = _collect_error_text(error)

    if isinstance(ssl_err, ssl.SSLCertVerificationError):
        verify_code = getattr(ssl_err, "verify_code", None)
        if verify_code == 10 or "expired" in error_msg:
            return ("TLS MITM", "Cert expired")
        elif verify_code in (18, 19) or "self-signed" in error_msg or "self signed" in error_msg:
            return ("TLS MITM", "Self-signed cert")
        elif verify_code == 20 or "unknown ca" in error_msg or "unable to get local issuer" in error_msg:
            return ("TLS MITM", "Unknown CA")
        elif verify_code == 62 or "hostname mismatch" in error_msg:
            return ("TLS MITM", "Hostname mismatch")
        return ("TLS MITM", "Cert verify fail")

    if isinstance(ssl_err, ssl.SSLZeroReturnError):
        return ("TLS CLOSE", "TLS close_notify")

    if "wrong version number" in error_msg:
        return ("TLS DPI", "Non-TLS response")
    if "protocol version" in error_msg or "unsupported protocol" in error_msg:
        return ("TLS BLOCK", "Version block")
    if "no application protocol" in error_msg:
        return ("TLS DPI", "ALPN refused")
    if "unrecognized name" in error_msg or "unrecognized_name" in error_msg:
        return ("TLS DPI", "SNI unrecognized")
    if "handshake failure" in error_msg or "handshake_failure" in error_msg:
        return ("TLS DPI", "Handshake alert")
    if "cipher" in error_msg:
        return ("TLS MITM", "Cipher mismatch")
    if "bad mac" in error_msg or "decrypt" in error_msg:
        return ("TLS DPI", "Decrypt error")
    if "eof" in error_msg:
        return ("TLS DPI", "Unexpected EOF")

    if _find_cause_of_type(error, ConnectionResetError) is not None \
       or _get_errno_from_chain(error) in (errno.ECONNRESET, WSAECONNRESET):
        return ("TLS DPI", "RST during handshake")
    if _find_cause_of_type(error, TimeoutError) is not None or "timed out" in error_msg:
        return ("TIMEOUT", "Handshake timeout")

    if ssl_err is not None:
        return ("SSL ERR", str(ssl_err)[:40].replace("\n", " "))
    return ("TLS FAIL", type(error).__name__)
