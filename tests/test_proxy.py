"""
tests/test_proxy.py -- Integration tests for the proxy catch-all.

Requests go through the real ASGI stack (PathRouter -> ProxyForwarder) with
the upstream replaced by FakeUpstream over httpx.MockTransport.

Coverage:
  - secret path: segment stripped, API origin, no session needed
  - frontend: prefixed with the caller's secret path, UI origin
  - frontend without session: 302 to the dashboard login page
  - unknown /api and /dashboard paths are 404, never proxied
  - body, method and query pass through; repeated Set-Cookie survives
  - gateway cookie and bearer token are not forwarded upstream
  - transport failure: 502 upstream_unavailable
  - a reset secret path stops routing immediately
  - fetch() strips gateway credentials like forward()
  - path classification runs in the threadpool, not on the event loop
  - a client disconnect mid-body closes the upstream stream
  - websocket relay: text and bytes round-trip through a real upstream;
    an unreachable upstream closes with 1011
"""

from __future__ import annotations

import asyncio
import socket
import threading
from collections.abc import Generator

import httpx
import pytest
from starlette.requests import Request
from starlette.websockets import WebSocketDisconnect
from websockets.asyncio.server import serve

from api.main import app
from core.router import Namespace, Origin, RouteDecision
from proxy.forwarder import ProxyForwarder
from tests.fakes import API_URL, UI_URL, HangingBody, make_forwarder


class TestSecretPathProxy:
    def test_forwards_to_api_origin(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        resp = gateway.client.get(f"/{tenant.secret_path}/api/subs?target=clash")
        assert resp.status_code == 200
        echoed = resp.json()
        assert echoed["origin"] == API_URL
        assert echoed["path"] == "/api/subs"
        assert echoed["query"] == "target=clash"
        assert gateway.upstream.last.headers["x-forwarded-prefix"] == f"/{tenant.secret_path}"

    def test_body_and_method_pass_through(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        resp = gateway.client.patch(f"/{tenant.secret_path}/api/sub/x", content=b'{"name": "x"}')
        echoed = resp.json()
        assert echoed["method"] == "PATCH"
        assert echoed["body"] == '{"name": "x"}'

    def test_repeated_set_cookie_headers_survive(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        resp = gateway.client.get(f"/{tenant.secret_path}/")
        assert resp.headers.get_list("set-cookie") == ["engine_a=1; Path=/", "engine_b=2; Path=/"]

    def test_upstream_error_status_passes_through(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        gateway.upstream.status_for["/api/missing"] = 404
        resp = gateway.client.get(f"/{tenant.secret_path}/api/missing")
        assert resp.status_code == 404
        assert resp.json()["path"] == "/api/missing"

    def test_reset_path_stops_routing(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        old = tenant.secret_path
        gateway.store.reset_secret_path(tenant.id)
        resp = gateway.client.get(f"/{old}/api/subs")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard/"
        assert gateway.upstream.requests == []


class TestFrontendProxy:
    def test_unauthenticated_redirects_to_login(self, gateway) -> None:
        resp = gateway.client.get("/subs")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard/"
        assert gateway.upstream.requests == []

    def test_authenticated_prefixes_secret_path(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        resp = gateway.client.get("/subs", headers=gateway.bearer(tenant))
        echoed = resp.json()
        assert echoed["origin"] == UI_URL
        assert echoed["path"] == f"/{tenant.secret_path}/subs"

    def test_gateway_credentials_not_forwarded(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        token = gateway.tokens.issue_for(tenant)
        gateway.client.cookies.set("access_token", token)
        gateway.client.cookies.set("theme", "dark")
        gateway.client.get("/subs")
        sent = gateway.upstream.last
        assert sent.headers["cookie"] == "theme=dark"
        assert "authorization" not in sent.headers

    def test_non_bearer_authorization_is_forwarded(self, gateway) -> None:
        tenant = gateway.store.create_tenant("alice", "x")
        gateway.client.get(f"/{tenant.secret_path}/x", headers={"Authorization": "Basic dTpw"})
        assert gateway.upstream.last.headers["authorization"] == "Basic dTpw"


class TestLocalNamespaces:
    def test_unknown_api_route_is_404(self, gateway) -> None:
        resp = gateway.client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert gateway.upstream.requests == []

    def test_dashboard_without_bundle_is_404(self, gateway) -> None:
        assert gateway.client.get("/dashboard/").status_code == 404
        assert gateway.upstream.requests == []


def test_upstream_down_is_502(gateway) -> None:
    tenant = gateway.store.create_tenant("alice", "x")
    gateway.upstream.fail = True
    resp = gateway.client.get(f"/{tenant.secret_path}/api/subs")
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "upstream_unavailable"


class TestWebsocket:
    def test_without_session_is_rejected(self, gateway) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with gateway.client.websocket_connect("/socket"):
                pass
        assert exc_info.value.code == 1008

    def test_api_namespace_is_rejected(self, gateway, admin_token) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with gateway.client.websocket_connect("/api/v1/self", headers={"Authorization": f"Bearer {admin_token}"}):
                pass
        assert exc_info.value.code == 1008

    def test_ws_url_follows_origin_scheme(self) -> None:
        forwarder = ProxyForwarder("https://engine.example", "http://ui.example")
        api = RouteDecision(Namespace.tenant_secret_proxy, "/ws", False, origin=Origin.api)
        ui = RouteDecision(Namespace.public_frontend_proxy, "/abc/ws", True, origin=Origin.ui)
        assert forwarder.build_ws_url(api, "a=1") == "wss://engine.example/ws?a=1"
        assert forwarder.build_ws_url(ui) == "ws://ui.example/abc/ws"


@pytest.fixture
def admin_token(gateway) -> str:
    return gateway.tokens.issue_for(gateway.admin)


class TestFetch:
    def test_gateway_credentials_are_stripped(self, upstream) -> None:
        forwarder = make_forwarder(upstream)
        decision = RouteDecision(Namespace.tenant_secret_proxy, "/api/utils/refresh", False, origin=Origin.api)
        headers = {"Authorization": "Bearer abc.def.ghi", "Cookie": "access_token=abc; theme=dark", "Accept": "text/plain"}

        response = asyncio.run(forwarder.fetch(decision, "GET", headers=headers))

        assert response.status_code == 200
        sent = upstream.last
        assert "authorization" not in sent.headers
        assert sent.headers["cookie"] == "theme=dark"
        assert sent.headers["accept"] == "text/plain"


def test_classification_runs_off_the_event_loop(gateway, monkeypatch) -> None:
    path_router = app.state.path_router
    real_classify = path_router.classify
    on_loop: list[bool] = []

    def recording_classify(path, claims=None):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_loop.append(False)
        else:
            on_loop.append(True)
        return real_classify(path, claims)

    monkeypatch.setattr(path_router, "classify", recording_classify)
    tenant = gateway.store.create_tenant("alice", "x")
    assert gateway.client.get(f"/{tenant.secret_path}/api/subs").status_code == 200
    assert on_loop == [False]


def _request_scope(path: str) -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"gateway.test")],
        "client": ("198.51.100.4", 50000),
        "server": ("gateway.test", 80),
    }


def test_client_disconnect_closes_upstream_stream() -> None:
    body = HangingBody(b"first")
    forwarder = make_forwarder(lambda request: httpx.Response(200, stream=body))
    decision = RouteDecision(Namespace.tenant_secret_proxy, "/feed", False, origin=Origin.api)
    scope = _request_scope("/feed")

    async def run() -> list[dict]:
        sent: list[dict] = []
        first_chunk = asyncio.Event()

        async def receive() -> dict:
            await first_chunk.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)
            if message.get("body"):
                first_chunk.set()

        response = await forwarder.forward(Request(scope, receive), decision)
        await asyncio.wait_for(response(scope, receive, send), timeout=5)
        await forwarder.aclose()
        return sent

    sent = asyncio.run(run())

    assert body.closed
    assert [m["body"] for m in sent if m["type"] == "http.response.body" and m.get("body")] == [b"first"]


@pytest.fixture
def echo_upstream() -> Generator[str, None, None]:
    """Real websockets echo server on a background loop. Yields its http:// origin."""
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    state: dict = {}

    async def echo(connection) -> None:
        async for message in connection:
            await connection.send(message)

    async def main() -> None:
        async with serve(echo, "127.0.0.1", 0) as server:
            state["port"] = server.sockets[0].getsockname()[1]
            state["stop"] = loop.create_future()
            ready.set()
            await state["stop"]

    thread = threading.Thread(target=loop.run_until_complete, args=(main(),), daemon=True)
    thread.start()
    assert ready.wait(5)
    yield f"http://127.0.0.1:{state['port']}"
    loop.call_soon_threadsafe(state["stop"].set_result, None)
    thread.join(5)
    loop.close()


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWebsocketRelay:
    def test_text_and_bytes_round_trip(self, gateway, echo_upstream: str) -> None:
        app.state.forwarder = make_forwarder(gateway.upstream, api_url=echo_upstream)
        tenant = gateway.store.create_tenant("alice", "x")
        with gateway.client.websocket_connect(f"/{tenant.secret_path}/socket") as ws:
            ws.send_text("hello")
            assert ws.receive_text() == "hello"
            ws.send_bytes(b"\x00\x01\x02")
            assert ws.receive_bytes() == b"\x00\x01\x02"

    def test_upstream_down_closes_with_1011(self, gateway) -> None:
        app.state.forwarder = make_forwarder(gateway.upstream, api_url=f"http://127.0.0.1:{_unused_port()}")
        tenant = gateway.store.create_tenant("alice", "x")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with gateway.client.websocket_connect(f"/{tenant.secret_path}/socket"):
                pass
        assert exc_info.value.code == 1011
