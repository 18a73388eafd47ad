import argparse
import asyncio
import codecs
import sys
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import config

try:
    import httpx
    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table
    from rich.progress import Progress, SpinnerColumn, TextColumn
except ImportError as e:
    print(f"Error: {e}")
    print("Install dependencies: pip install httpx[http2] rich")
    sys.exit(1)

from h2_session import Http2Session, TunnelTransport
from tunnel import (
    TunnelRequest,
    TunnelResponse,
    build_ssl_context,
    connect_proxy,
    establish_tunnel,
    format_authority,
    upgrade_tls,
)
from tunnel_errors import ClientTimeout, Phase, TunnelClientError

console = Console()

# =================== Config
PROXY_HOST = config.PROXY_HOST
PROXY_PORT = config.PROXY_PORT
TARGET_HOST = config.TARGET_HOST
TARGET_PORT = config.TARGET_PORT
REQUEST_PATH = config.REQUEST_PATH
TLS_VERIFY = config.TLS_VERIFY
OFFER_HTTP1 = config.OFFER_HTTP1
CONNECT_TIMEOUT = config.CONNECT_TIMEOUT
TLS_TIMEOUT = config.TLS_TIMEOUT
READ_TIMEOUT = config.READ_TIMEOUT
TOTAL_TIMEOUT = config.TOTAL_TIMEOUT
MAX_CONCURRENT = config.MAX_CONCURRENT
BODY_PREVIEW_CHARS = config.BODY_PREVIEW_CHARS
USER_AGENT = config.USER_AGENT


@dataclass(frozen=True)
class ClientConfig:
    proxy_host: str = PROXY_HOST
    proxy_port: int = PROXY_PORT
    target_host: str = TARGET_HOST
    target_port: int = TARGET_PORT
    tls_verify: bool = TLS_VERIFY
    offer_http1: bool = OFFER_HTTP1
    user_agent: str = USER_AGENT
    path: str = REQUEST_PATH
    connect_timeout: Optional[float] = CONNECT_TIMEOUT
    tls_timeout: Optional[float] = TLS_TIMEOUT
    read_timeout: Optional[float] = READ_TIMEOUT
    total_timeout: Optional[float] = TOTAL_TIMEOUT

    def tunnel_request(self) -> TunnelRequest:
        return TunnelRequest(self.proxy_host, self.proxy_port, self.target_host, self.target_port)

    @property
    def target(self) -> str:
        return format_authority(self.target_host, self.target_port)

    @property
    def target_url(self) -> str:
        host = f"[{self.target_host}]" if ":" in self.target_host else self.target_host
        if self.target_port != 443:
            host = f"{host}:{self.target_port}"
        return f"https://{host}{self.path}"


@dataclass
class ClientResult:
    """Everything one invocation observed. Owned by that invocation only."""

    target: str
    phases: List[str] = field(default_factory=lambda: [Phase.INIT])
    tunnel: Optional[TunnelResponse] = None
    negotiated_protocol: Optional[str] = None
    tls_version: Optional[str] = None
    status_code: Optional[int] = None
    http_version: Optional[str] = None
    body: str = ""
    bytes_received: int = 0
    error: Optional[TunnelClientError] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and Phase.STREAM_COMPLETE in self.phases

    @property
    def last_phase(self) -> str:
        """Furthest state reached before CLOSED."""
        reached = [p for p in self.phases if p != Phase.CLOSED]
        return reached[-1] if reached else Phase.INIT


def _advance(result: ClientResult, out: Console, phase: str, message: str = "") -> None:
    result.phases.append(phase)
    line = f"[green][OK][/green] {phase}"
    if message:
        line += f"  {escape(message)}"
    out.print(line, highlight=False)


def _info(out: Console, message: str) -> None:
    out.print(f"[cyan][INFO][/cyan] {escape(message)}", highlight=False)


# ============================================================================ Phases

async def _run_phases(cfg: ClientConfig, result: ClientResult, backend, out: Console) -> None:
    request = cfg.tunnel_request()

    _info(out, f"Connecting to proxy {request.proxy_authority}...")
    stream = await connect_proxy(request, backend, timeout=cfg.connect_timeout)
    _advance(result, out, Phase.TCP_CONNECTED, f"Sending CONNECT {request.authority}...")

    result.tunnel = await establish_tunnel(stream, request, timeout=cfg.connect_timeout)
    _advance(result, out, Phase.TUNNEL_CONFIRMED, result.tunnel.status_line)

    ssl_context = build_ssl_context(verify=cfg.tls_verify, offer_http1=cfg.offer_http1)
    alpn = "h2, http/1.1" if cfg.offer_http1 else "h2"
    _info(out, f"Upgrading to TLS (SNI {cfg.target_host}, ALPN {alpn})...")
    tls_session = await upgrade_tls(stream, cfg.target_host, ssl_context, timeout=cfg.tls_timeout)
    result.negotiated_protocol = tls_session.negotiated_protocol
    result.tls_version = tls_session.tls_version
    details = f"ALPN {tls_session.negotiated_protocol}"
    if tls_session.tls_version:
        details += f", {tls_session.tls_version}"
    if tls_session.cipher:
        details += f", {tls_session.cipher}"
    _advance(result, out, Phase.TLS_NEGOTIATED, details)

    session = Http2Session(tls_session, port=cfg.target_port)
    _advance(result, out, Phase.HTTP2_SESSION_OPEN)

    async with httpx.AsyncClient(
        transport=TunnelTransport(session),
        timeout=httpx.Timeout(cfg.read_timeout),
        follow_redirects=False,
    ) as client:
        req = client.build_request(
            "GET",
            cfg.target_url,
            headers={
                "User-Agent": cfg.user_agent,
                "Accept-Encoding": "identity",
            },
        )
        _info(out, f"Sending GET {cfg.path}...")
        response = await client.send(req, stream=True)
        try:
            result.status_code = response.status_code
            result.http_version = response.http_version
            # Response headers prove the request HEADERS reached the server
            _advance(result, out, Phase.STREAM_OPEN,
                     f"{response.status_code} {response.reason_phrase} ({response.http_version})")

            # Chunks are decoded in arrival order; a split multi-byte sequence
            # is carried over to the next chunk
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            parts = []
            async for chunk in response.aiter_bytes():
                result.bytes_received += len(chunk)
                parts.append(decoder.decode(chunk))
            parts.append(decoder.decode(b"", final=True))
        finally:
            await response.aclose()

    result.body = "".join(parts)
    _advance(result, out, Phase.STREAM_COMPLETE, f"{result.bytes_received} bytes")


async def run_client(
    cfg: ClientConfig,
    backend=None,
    out: Optional[Console] = None,
) -> ClientResult:
    """One-shot CONNECT -> TLS -> HTTP/2 GET.

    Never retries. Failures of the taxonomy are returned in result.error,
    not raised; anything else is a bug and propagates.
    """
    if out is None:
        out = console
    result = ClientResult(target=cfg.target)
    start_time = time.time()

    if not cfg.tls_verify:
        out.print(
            "[bold red][WARN] TLS certificate verification is DISABLED. "
            "Use only against intercepting test proxies.[/bold red]"
        )

    try:
        await asyncio.wait_for(_run_phases(cfg, result, backend, out), timeout=cfg.total_timeout)
    except asyncio.TimeoutError:
        result.error = ClientTimeout(
            f"no result within {cfg.total_timeout}s", detail=f"Stopped after {result.last_phase}"
        )
    except TunnelClientError as e:
        result.error = e
    finally:
        result.elapsed = time.time() - start_time
        result.phases.append(Phase.CLOSED)

    if result.error is not None:
        out.print(
            f"[bold red][ERROR][/bold red] {result.error.phase}: {escape(str(result.error))}",
            highlight=False,
        )
    else:
        preview = result.body[:BODY_PREVIEW_CHARS]
        if len(result.body) > BODY_PREVIEW_CHARS:
            preview += "..."
        _info(out, f"Response received in {result.elapsed:.2f}s:")
        out.print(preview, markup=False, highlight=False)
    _info(out, "Session closed")
    return result


# ============================================================================ Batch mode

async def run_batch(
    configs: List[ClientConfig],
    max_concurrent: int = MAX_CONCURRENT,
    backend=None,
    out: Optional[Console] = None,
) -> List[ClientResult]:
    """Independent invocations, run concurrently; results are collected here."""
    if out is None:
        out = console
    semaphore = asyncio.Semaphore(max_concurrent)
    quiet = Console(quiet=True)

    async def worker(cfg: ClientConfig) -> ClientResult:
        async with semaphore:
            return await run_client(cfg, backend=backend, out=quiet)

    results = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=out,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Probing targets...", total=len(configs))
        completed = 0
        tasks = [asyncio.ensure_future(worker(c)) for c in configs]
        try:
            for future in asyncio.as_completed(tasks):
                results.append(await future)
                completed += 1
                progress.update(
                    task_id,
                    completed=completed,
                    description=f"Probing targets ({completed}/{len(configs)})...",
                )
        finally:
            # One worker failing must not leave the others running
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    results.sort(key=lambda r: r.target)
    return results


def render_results_table(results: List[ClientResult]) -> Table:
    table = Table(show_header=True, header_style="bold magenta", border_style="dim")
    table.add_column("Target", style="cyan", no_wrap=True)
    table.add_column("Reached", width=18)
    table.add_column("Result", justify="center", width=12)
    table.add_column("Details", style="dim", no_wrap=True)

    for r in results:
        if r.ok:
            status = "[green]OK[/green]"
            detail = f"{r.status_code} {r.http_version} | {r.bytes_received}B"
        else:
            status = f"[bold red]{escape(r.error.label)}[/bold red]"
            detail = escape(r.error.detail or r.error.message)
        detail += f" | {r.elapsed:.1f}s"
        table.add_row(r.target, r.last_phase, status, detail)
    return table


# ============================================================================ CLI

def parse_host_port(value: str, default_port: int = 443) -> Tuple[str, int]:
    """host, host:port, [v6] or [v6]:port."""
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or not host:
            raise argparse.ArgumentTypeError(f"invalid address: {value}")
        if not rest:
            return host, default_port
        if not rest.startswith(":"):
            raise argparse.ArgumentTypeError(f"invalid address: {value}")
        port_text = rest[1:]
    elif value.count(":") == 1:
        host, port_text = value.split(":")
    else:
        # Bare hostname or unbracketed IPv6 literal
        host, port_text = value, ""

    if not host:
        raise argparse.ArgumentTypeError(f"invalid address: {value}")
    if not port_text:
        return host, default_port
    try:
        port = int(port_text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in {value!r}") from None
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range in {value!r}")
    return host, port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="h2-debug-client",
        description="Reach HTTPS targets through an HTTP CONNECT proxy over TLS+HTTP/2 "
                    "and report the phase where it breaks.",
    )
    parser.add_argument(
        "targets", nargs="*", metavar="TARGET", type=parse_host_port,
        help=f"host[:port] to request (default: {format_authority(TARGET_HOST, TARGET_PORT)})",
    )
    parser.add_argument(
        "--proxy", type=lambda v: parse_host_port(v, default_port=PROXY_PORT),
        default=(PROXY_HOST, PROXY_PORT), metavar="HOST:PORT",
        help=f"CONNECT proxy (default: {format_authority(PROXY_HOST, PROXY_PORT)})",
    )
    parser.add_argument("--insecure", action="store_true",
                        help="disable TLS certificate verification")
    parser.add_argument("--offer-http1", action="store_true",
                        help="also offer http/1.1 in ALPN (h2 is still required)")
    parser.add_argument("--user-agent", default=USER_AGENT)
    parser.add_argument("--path", default=REQUEST_PATH, help="request path (default: /)")
    parser.add_argument("--timeout", type=float, default=TOTAL_TIMEOUT,
                        help=f"total deadline per target in seconds (default: {TOTAL_TIMEOUT})")
    parser.add_argument("--max-concurrent", type=int, default=MAX_CONCURRENT)
    return parser


def configs_from_args(args: argparse.Namespace) -> List[ClientConfig]:
    proxy_host, proxy_port = args.proxy
    path = args.path if args.path.startswith("/") else "/" + args.path
    base = ClientConfig(
        proxy_host=proxy_host,
        proxy_port=proxy_port,
        tls_verify=TLS_VERIFY and not args.insecure,
        offer_http1=OFFER_HTTP1 or args.offer_http1,
        user_agent=args.user_agent,
        path=path,
        total_timeout=args.timeout,
    )
    targets = args.targets or [(TARGET_HOST, TARGET_PORT)]
    return [replace(base, target_host=host, target_port=port) for host, port in targets]


async def main(argv: Optional[List[str]] = None, backend=None, out: Optional[Console] = None) -> int:
    if out is None:
        out = console
    args = build_parser().parse_args(argv)
    configs = configs_from_args(args)

    out.print("[bold cyan]H2 Debug Client[/bold cyan] | [yellow]CONNECT -> TLS -> HTTP/2[/yellow]")
    out.print(
        f"[dim]Proxy: {format_authority(configs[0].proxy_host, configs[0].proxy_port)} | "
        f"Targets: {len(configs)} | Deadline: {args.timeout}s | "
        f"TLS verify: {configs[0].tls_verify}[/dim]\n"
    )

    if len(configs) == 1:
        result = await run_client(configs[0], backend=backend, out=out)
        return 0 if result.ok else 1

    if not configs[0].tls_verify:
        out.print(
            "[bold red][WARN] TLS certificate verification is DISABLED. "
            "Use only against intercepting test proxies.[/bold red]"
        )
    results = await run_batch(configs, max_concurrent=args.max_concurrent, backend=backend, out=out)
    out.print(render_results_table(results))

    passed = sum(1 for r in results if r.ok)
    out.print(f"\n[bold]Results:[/bold] OK {passed}/{len(results)}")
    return 0 if passed == len(results) else 1


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted by user.[/bold red]")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()
