import logging
import time
from typing import AsyncIterator, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse

from service_proxy.errors import UpstreamUnavailable
from service_proxy.rules import ProxyAction
from service_proxy.utils import masked_headers
from service_proxy.utils.exception_logging import format_exception_message
from service_proxy.utils.traced_requests import UPSTREAM_SECONDS

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Hop-by-hop headers that should NOT be forwarded (RFC 9110 section 7.6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def build_target_url(action: ProxyAction, path: str, query: str = "") -> str:
    """Append the inbound path and query to the origin of the proxy target."""
    if not path.startswith("/"):
        path = "/" + path
    url = f"{action.origin}{path}"
    if query:
        url = f"{url}?{query}"
    return url


def strip_hop_by_hop(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """
    Drop hop-by-hop headers, including any header the Connection header names.
    Repeated headers keep their order.
    """
    headers = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    for name, value in headers:
        if name.lower() == "connection":
            dropped.update(
                token.strip().lower() for token in value.split(",") if token.strip()
            )
    return [(name, value) for name, value in headers if name.lower() not in dropped]


def target_authority(target_url: str) -> str:
    """Host header value for target_url: host and explicit port, never userinfo."""
    parsed = urlparse(target_url)
    host = parsed.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{parsed.port}" if parsed.port is not None else host


def prepare_headers(
    headers: Iterable[Tuple[str, str]], target_url: str
) -> List[Tuple[str, str]]:
    """Headers for the outbound request: hop-by-hop removed, Host pointed at the target."""
    forwarded = [
        (name, value)
        for name, value in strip_hop_by_hop(headers)
        if name.lower() != "host"
    ]
    forwarded.insert(0, ("host", target_authority(target_url)))
    return forwarded


def _has_body(request: Request) -> bool:
    return (
        "content-length" in request.headers or "transfer-encoding" in request.headers
    )


class Forwarder:
    """
    Performs the upstream call for proxy rules.

    One httpx client is shared by every request handled on the server's event
    loop; ``aclose`` releases it when the server shuts down.
    """

    def __init__(
        self,
        connect_timeout: float,
        read_timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=read_timeout,
            pool=connect_timeout,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(self, request: Request, action: ProxyAction) -> StreamingResponse:
        """
        Send the inbound request to the target and stream the reply back.

        Raises:
            UpstreamUnavailable: connect failure, DNS failure or timeout before
                the upstream response headers arrived.
        """
        # Percent-escapes are forwarded exactly as the client sent them
        raw_path = request.scope.get("raw_path")
        if raw_path:
            path = raw_path.split(b"?", 1)[0].decode("latin-1")
        else:
            path = request.url.path
        target_url = build_target_url(action, path, request.url.query)
        headers = prepare_headers(request.headers.items(), target_url)
        content = request.stream() if _has_body(request) else None

        logger.debug(
            f"[Forward] {request.method} {request.url.path} -> {target_url} "
            f"headers={masked_headers(headers)}"
        )

        client = self._get_client()
        upstream_request = client.build_request(
            request.method, target_url, headers=headers, content=content
        )

        with tracer.start_as_current_span("proxy.upstream") as span:
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", request.method)
            started = time.perf_counter()
            try:
                upstream = await client.send(upstream_request, stream=True)
            except httpx.TimeoutException as e:
                span.set_attribute("proxy.error", "timeout")
                raise UpstreamUnavailable(target_url, f"timed out ({type(e).__name__})")
            except httpx.TransportError as e:
                span.set_attribute("proxy.error", "connection_failed")
                raise UpstreamUnavailable(target_url, format_exception_message(e))
            finally:
                UPSTREAM_SECONDS.observe(time.perf_counter() - started)
            span.set_attribute("proxy.status_code", upstream.status_code)

        response = StreamingResponse(
            _stream_body(upstream, target_url),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in strip_hop_by_hop(upstream.headers.multi_items())
        ]
        return response


async def _stream_body(upstream: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
    # Raw bytes keep the upstream Content-Encoding and Content-Length intact
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.warning(f"[Forward] Upstream {target_url} failed mid-response: {e!r}")
        raise UpstreamUnavailable(target_url, "response interrupted")
    finally:
        await upstream.aclose()
