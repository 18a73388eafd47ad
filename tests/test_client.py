import argparse
import asyncio
import io

import httpcore
import hyperframe.frame
import pytest
from rich.console import Console

from fakes import (
    CONNECT_FORBIDDEN,
    CONNECT_OK,
    HTML_BODY,
    FakeProxy,
    ScriptedBackend,
    ScriptedStream,
    data_frame,
    h2_response,
    decode_request_headers,
    settings_frame,
)
from h2_debug_client import (
    ClientConfig,
    build_parser,
    configs_from_args,
    main,
    parse_host_port,
    render_results_table,
    run_batch,
    run_client,
)
from tunnel_errors import (
    ClientTimeout,
    Phase,
    ProtocolNotNegotiated,
    StreamError,
    TransportError,
    TunnelRejected,
)

CFG = ClientConfig(proxy_host="localhost", proxy_port=4433, target_host="example.com", target_port=443)

FULL_SEQUENCE = [
    Phase.INIT,
    Phase.TCP_CONNECTED,
    Phase.TUNNEL_CONFIRMED,
    Phase.TLS_NEGOTIATED,
    Phase.HTTP2_SESSION_OPEN,
    Phase.STREAM_OPEN,
    Phase.STREAM_COMPLETE,
    Phase.CLOSED,
]


def output(console: Console) -> str:
    return console.file.getvalue()


# ============================================================================ run_client

def test_success_reaches_stream_complete(ok_backend, ok_stream, out):
    result = asyncio.run(run_client(CFG, backend=ok_backend, out=out))

    assert result.ok
    assert result.error is None
    assert result.phases == FULL_SEQUENCE
    assert result.tunnel.status_code == 200
    assert result.negotiated_protocol == "h2"
    assert result.status_code == 200
    assert result.http_version == "HTTP/2"
    assert result.body == HTML_BODY.decode("utf-8")
    assert result.body.startswith("<!doctype html>")
    assert result.bytes_received == len(HTML_BODY)
    assert ok_stream.closed
    assert ok_stream.server_hostname == "example.com"


def test_success_output_sequence(ok_backend, out):
    asyncio.run(run_client(CFG, backend=ok_backend, out=out))
    text = output(out)

    tunnel = text.index("TUNNEL_CONFIRMED")
    tls = text.index("TLS_NEGOTIATED")
    done = text.index("STREAM_COMPLETE")
    assert tunnel < tls < done
    assert "HTTP/1.1 200 Connection Established" in text
    assert "ALPN h2" in text
    assert "<!doctype html>" in text
    assert "[ERROR]" not in text
    assert "DISABLED" not in text


def test_body_preview_is_truncated():
    wide = Console(file=io.StringIO(), width=5000, color_system=None)
    body = b"<!doctype html>" + b"x" * 2000
    stream = ScriptedStream([CONNECT_OK] + h2_response(body=body, pieces=4))
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=wide))

    assert len(result.body) == len(body)
    # 500 characters: the doctype plus 485 x's
    assert "x" * 485 + "..." in output(wide)
    assert "x" * 486 not in output(wide)


def test_utf8_split_across_frames(out):
    body = "<!doctype html>привет".encode("utf-8")
    # Cut through the middle of a two-byte character
    frames = h2_response(body=body, pieces=1)[:2]
    frames += [data_frame(body[:16]), data_frame(body[16:], end_stream=True)]
    stream = ScriptedStream([CONNECT_OK] + frames)

    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))
    assert result.body == "<!doctype html>привет"


def test_proxy_forbidden_stops_before_tls(out):
    stream = ScriptedStream([CONNECT_FORBIDDEN])
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))

    assert not result.ok
    assert isinstance(result.error, TunnelRejected)
    assert result.error.response.status_code == 403
    assert result.phases == [Phase.INIT, Phase.TCP_CONNECTED, Phase.CLOSED]
    assert stream.closed
    assert not stream.tls_started
    text = output(out)
    assert "[ERROR] TUNNEL" in text
    assert "403 Forbidden (HTTP 403)" not in text
    assert "Upgrading to TLS" not in text


def test_http1_alpn_stops_before_http2(out):
    stream = ScriptedStream([CONNECT_OK] + h2_response(), alpn="http/1.1")
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))

    assert isinstance(result.error, ProtocolNotNegotiated)
    assert Phase.HTTP2_SESSION_OPEN not in result.phases
    assert result.last_phase == Phase.TUNNEL_CONFIRMED
    # Only the CONNECT request was ever written
    assert len(stream.written) == 1
    assert stream.closed
    assert "[ERROR] ALPN" in output(out)


def test_request_headers_follow_connect(ok_backend, ok_stream, out):
    asyncio.run(run_client(CFG, backend=ok_backend, out=out))

    assert ok_stream.written[0].startswith(b"CONNECT example.com:443 ")
    headers = dict(decode_request_headers(ok_stream.h2_bytes))
    assert headers[":authority"] == "example.com"
    assert headers[":path"] == "/"
    assert headers["user-agent"] == "h2-debug-client"


def test_reset_before_response_never_opens_stream(out):
    reset = hyperframe.frame.RstStreamFrame(stream_id=1, error_code=8).serialize()
    stream = ScriptedStream([CONNECT_OK, settings_frame(), reset])
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))

    assert isinstance(result.error, StreamError)
    assert result.error.detail == "CANCEL"
    assert Phase.STREAM_OPEN not in result.phases
    assert result.last_phase == Phase.HTTP2_SESSION_OPEN
    assert stream.closed


def test_fragmented_connect_reply(out):
    stream = ScriptedStream(
        [b"HTTP/1.1 200 Connection Established\r\n", b"\r\n"] + h2_response()
    )
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))
    assert result.ok
    assert result.tunnel.status_code == 200


def test_proxy_unreachable(out):
    error = httpcore.ConnectError("refused")
    error.__cause__ = ConnectionRefusedError(111, "Connection refused")
    result = asyncio.run(run_client(CFG, backend=ScriptedBackend(error=error), out=out))

    assert isinstance(result.error, TransportError)
    assert result.phases == [Phase.INIT, Phase.CLOSED]
    assert "[ERROR] TCP" in output(out)


def test_total_deadline(out):
    stream = ScriptedStream([], hang=True)
    cfg = ClientConfig(target_host="example.com", connect_timeout=None, total_timeout=0.05)
    result = asyncio.run(run_client(cfg, backend=ScriptedBackend(stream), out=out))

    assert isinstance(result.error, ClientTimeout)
    assert result.error.timeout
    assert result.last_phase == Phase.TCP_CONNECTED
    assert stream.closed


def test_same_phase_sequence_on_repeat(out):
    def once():
        stream = ScriptedStream([CONNECT_OK] + h2_response())
        return asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))

    first, second = once(), once()
    assert first.phases == second.phases == FULL_SEQUENCE
    assert first.ok and second.ok

    def rejected():
        stream = ScriptedStream([CONNECT_FORBIDDEN])
        return asyncio.run(run_client(CFG, backend=ScriptedBackend(stream), out=out))

    assert rejected().phases == rejected().phases


def test_insecure_mode_is_announced(ok_backend, ok_stream, out):
    cfg = ClientConfig(target_host="example.com", tls_verify=False)
    result = asyncio.run(run_client(cfg, backend=ok_backend, out=out))

    assert result.ok
    assert "verification is DISABLED" in output(out)
    assert ok_stream.ssl_context.check_hostname is False


def test_config_target_url():
    assert CFG.target_url == "https://example.com/"
    assert ClientConfig(target_host="example.com", target_port=8443, path="/x").target_url == \
        "https://example.com:8443/x"
    assert ClientConfig(target_host="::1").target == "[::1]:443"


# ============================================================================ Batch mode

def test_batch_runs_each_target_independently(out):
    proxy = FakeProxy({
        "example.com:443": [CONNECT_OK] + h2_response(),
        "blocked.example:443": [CONNECT_FORBIDDEN],
    })
    configs = [
        ClientConfig(target_host="example.com"),
        ClientConfig(target_host="blocked.example"),
        ClientConfig(target_host="unknown.example"),
    ]
    results = asyncio.run(run_batch(configs, max_concurrent=2, backend=proxy, out=out))

    assert [r.target for r in results] == ["blocked.example:443", "example.com:443", "unknown.example:443"]
    by_target = {r.target: r for r in results}
    assert by_target["example.com:443"].ok
    assert by_target["blocked.example:443"].error.response.status_code == 403
    assert by_target["unknown.example:443"].error.response.status_code == 502
    assert len(proxy.streams) == 3
    assert all(s.closed for s in proxy.streams)

    table = render_results_table(results)
    assert table.row_count == 3


def test_batch_cancels_remaining_on_unexpected_error(out):
    class FailingSecondConnect(httpcore.AsyncNetworkBackend):
        def __init__(self):
            self.streams = []

        async def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
            if len(self.streams) == 1:
                self.streams.append(None)
                raise RuntimeError("backend bug")
            stream = ScriptedStream([], hang=True)
            self.streams.append(stream)
            return stream

    backend = FailingSecondConnect()
    configs = [ClientConfig(target_host=f"t{i}.example") for i in range(3)]
    with pytest.raises(RuntimeError):
        asyncio.run(run_batch(configs, max_concurrent=3, backend=backend, out=out))

    hung = [s for s in backend.streams if s is not None]
    assert len(hung) == 2
    assert all(s.closed for s in hung)


# ============================================================================ CLI

@pytest.mark.parametrize("value,expected", [
    ("example.com", ("example.com", 443)),
    ("example.com:8443", ("example.com", 8443)),
    ("[::1]:4433", ("::1", 4433)),
    ("[2001:db8::1]", ("2001:db8::1", 443)),
    ("2001:db8::1", ("2001:db8::1", 443)),
])
def test_parse_host_port(value, expected):
    assert parse_host_port(value) == expected


@pytest.mark.parametrize("value", ["example.com:http", ":443", "example.com:0", "[::1", "[::1]x"])
def test_parse_host_port_invalid(value):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_host_port(value)


def test_configs_from_args():
    args = build_parser().parse_args(
        ["example.com", "other.example:8443", "--proxy", "proxy.local:3128", "--insecure", "--path", "robots.txt"]
    )
    configs = configs_from_args(args)

    assert [(c.target_host, c.target_port) for c in configs] == [("example.com", 443), ("other.example", 8443)]
    assert all(c.proxy_host == "proxy.local" and c.proxy_port == 3128 for c in configs)
    assert all(not c.tls_verify for c in configs)
    assert configs[0].path == "/robots.txt"


def test_configs_default_target():
    configs = configs_from_args(build_parser().parse_args([]))
    assert len(configs) == 1
    assert configs[0].tls_verify


def test_main_exit_codes(out):
    ok = ScriptedBackend(ScriptedStream([CONNECT_OK] + h2_response()))
    assert asyncio.run(main(["example.com"], backend=ok, out=out)) == 0

    rejected = ScriptedBackend(ScriptedStream([CONNECT_FORBIDDEN]))
    assert asyncio.run(main(["example.com"], backend=rejected, out=out)) == 1


def test_main_batch_exit_code():
    out = Console(file=io.StringIO(), width=200, color_system=None)
    proxy = FakeProxy({"example.com:443": [CONNECT_OK] + h2_response()})
    assert asyncio.run(main(["example.com", "blocked.example"], backend=proxy, out=out)) == 1
    assert "OK 1/2" in output(out)


def test_bad_cli_argument_exits():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["example.com:notaport"])
