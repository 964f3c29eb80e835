"""
proxy/forwarder.py -- Reverse-proxy round-trips to the upstream engine.

ProxyForwarder executes a RouteDecision produced by core.router.PathRouter:

  forward()          -- streams an HTTP request upstream and the response back
                        without parsing either body (httpx stream=True, raw
                        bytes, hop-by-hop headers removed)
  fetch()            -- buffered request, used by the sync scheduler
  relay_websocket()  -- bidirectional frame pump for upgraded connections
                        (websockets client on the upstream side)

Transport-level failures (connect errors, timeouts, protocol errors) become
UpstreamUnavailableError, which the app renders as a 502 with a stable
error body. There are no retries: a degraded upstream must be visible to
clients so they can back off.

The gateway's own credentials (access_token cookie, bearer token) are never
forwarded upstream. Host is set from the upstream URL by httpx; the original
host, scheme and client address travel in X-Forwarded-* headers.

Layer rule: no imports from api/ or auth/. core/ is allowed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.errors import UpstreamUnavailableError
from core.router import Origin, RouteDecision

logger = logging.getLogger("subgate.proxy")

GATEWAY_COOKIE = "access_token"

# RFC 7230 section 6.1 plus headers httpx/Starlette must recompute themselves.
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)

# Handshake headers the websockets client generates itself.
_WS_HANDSHAKE = frozenset(
    {
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)


def strip_gateway_cookie(cookie_header: str) -> str:
    """Remove the gateway's session cookie from a Cookie header value."""
    parts = [p.strip() for p in cookie_header.split(";")]
    kept = [p for p in parts if p and p.split("=", 1)[0].strip() != GATEWAY_COOKIE]
    return "; ".join(kept)


def _filter_request_headers(items: Iterable[tuple[str, str]], skip: frozenset[str] = _HOP_BY_HOP) -> list[tuple[str, str]]:
    headers = []
    for name, value in items:
        lower = name.lower()
        if lower in skip:
            continue
        if lower == "authorization" and value.lower().startswith("bearer "):
            continue
        if lower == "cookie":
            value = strip_gateway_cookie(value)
            if not value:
                continue
        headers.append((name, value))
    return headers


class ProxyForwarder:
    """HTTP and websocket forwarding to the engine's API and UI origins.

    Usage:
        forwarder = ProxyForwarder("http://core:3000", "http://core:3001", timeout=30)
        response = await forwarder.forward(request, decision)
        await forwarder.aclose()

    Tests inject an httpx.AsyncClient backed by httpx.MockTransport.
    """

    def __init__(
        self,
        api_url: str,
        ui_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._origins = {Origin.api: api_url.rstrip("/"), Origin.ui: ui_url.rstrip("/")}
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=False)

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_url(self, decision: RouteDecision, query: str = "") -> str:
        if decision.origin is None:
            raise ValueError(f"{decision.namespace.value} requests are not proxied")
        url = self._origins[decision.origin] + decision.rewritten_path
        return f"{url}?{query}" if query else url

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _forwarding_headers(self, request: Request | WebSocket, decision: RouteDecision) -> list[tuple[str, str]]:
        client_host = request.client.host if request.client else ""
        prior = request.headers.get("x-forwarded-for")
        extra = [
            ("X-Forwarded-For", f"{prior}, {client_host}" if prior else client_host),
            ("X-Forwarded-Proto", request.url.scheme.replace("ws", "http")),
            ("X-Forwarded-Host", request.headers.get("host", "")),
        ]
        if decision.forwarded_prefix:
            extra.append(("X-Forwarded-Prefix", decision.forwarded_prefix))
        return extra

    async def forward(self, request: Request, decision: RouteDecision) -> StreamingResponse:
        """Stream request to the upstream and return its response unmodified."""
        url = self.build_url(decision, request.url.query)
        skip = _HOP_BY_HOP | {"x-forwarded-for", "x-forwarded-proto", "x-forwarded-host", "x-forwarded-prefix"}
        headers = _filter_request_headers(request.headers.items(), skip)
        headers.extend(self._forwarding_headers(request, decision))

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as exc:
            logger.error("Upstream %s %s failed: %s", request.method, url, exc)
            raise UpstreamUnavailableError(detail=type(exc).__name__) from exc

        response = StreamingResponse(
            self._stream_body(upstream, url),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # Raw header list keeps repeated headers such as Set-Cookie intact.
        response.raw_headers = [
            (name.lower(), value)
            for name, value in upstream.headers.raw
            if name.decode("latin-1").lower() not in _HOP_BY_HOP
        ]
        return response

    @staticmethod
    async def _stream_body(upstream: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            # Status line is already sent; aborting the connection is all that is left.
            logger.warning("Upstream stream from %s broke mid-body: %s", url, exc)
            raise
        finally:
            await upstream.aclose()

    async def fetch(
        self,
        decision: RouteDecision,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        query: str = "",
    ) -> httpx.Response:
        """Buffered round-trip. Raises UpstreamUnavailableError on transport failure.

        headers go through the same filtering as forward(), so gateway
        credentials never reach the engine.
        """
        url = self.build_url(decision, query)
        sent_headers = _filter_request_headers((headers or {}).items())
        if decision.forwarded_prefix:
            sent_headers.append(("X-Forwarded-Prefix", decision.forwarded_prefix))
        try:
            return await self._client.request(method, url, headers=sent_headers)
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(detail=type(exc).__name__) from exc

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    def build_ws_url(self, decision: RouteDecision, query: str = "") -> str:
        url = self.build_url(decision, query)
        if url.startswith("https://"):
            return "wss://" + url[len("https://") :]
        return "ws://" + url[len("http://") :] if url.startswith("http://") else url

    async def relay_websocket(self, websocket: WebSocket, decision: RouteDecision) -> None:
        """Open an upstream websocket and pump frames both ways until either side closes."""
        url = self.build_ws_url(decision, websocket.url.query)
        headers = _filter_request_headers(websocket.headers.items(), _HOP_BY_HOP | _WS_HANDSHAKE)
        headers.extend(self._forwarding_headers(websocket, decision))
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream = await ws_connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols,
                open_timeout=self.timeout,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            logger.error("Upstream websocket %s failed: %s", url, exc)
            # Closing before accept rejects the handshake.
            await websocket.close(code=1011)
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        async with upstream:
            to_upstream = asyncio.create_task(self._client_to_upstream(websocket, upstream))
            to_client = asyncio.create_task(self._upstream_to_client(websocket, upstream))
            done, pending = await asyncio.wait({to_upstream, to_client}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, (ConnectionClosed, WebSocketDisconnect)):
                    logger.warning("Websocket relay for %s ended with error: %s", url, exc)

        if to_client in done:
            try:
                await websocket.close()
            except RuntimeError:
                # Client already gone.
                pass

    @staticmethod
    async def _client_to_upstream(websocket: WebSocket, upstream) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    @staticmethod
    async def _upstream_to_client(websocket: WebSocket, upstream) -> None:
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
