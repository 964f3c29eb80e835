"""
api/routes/proxy.py -- Catch-all routes that hand requests to the upstream engine.

Registered LAST in api/main.py so every explicit /api/v1 route and the
/dashboard static mount win first. Anything reaching here is classified by
PathRouter:

  dashboard / tenant_api  -> 404 (no such gateway page or API route)
  redirect_to set         -> 302 to the login page
  proxied                 -> ProxyForwarder.forward() / relay_websocket()

Websocket upgrades follow the same classification. A decision that is not
proxied closes the socket with 1008 (policy violation) before accept.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse, Response

from auth.dependencies import try_get_session
from core.errors import NotFoundError
from core.router import Namespace, PathRouter
from proxy.forwarder import ProxyForwarder

logger = logging.getLogger("subgate.api.proxy")

router = APIRouter()

_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{full_path:path}", methods=_METHODS, include_in_schema=False)
async def proxy_http(request: Request, full_path: str) -> Response:
    path_router: PathRouter = request.app.state.path_router
    forwarder: ProxyForwarder = request.app.state.forwarder

    # classify() does store lookups; keep them off the event loop.
    decision = await run_in_threadpool(path_router.classify, request.url.path, try_get_session(request))
    if decision.namespace in (Namespace.dashboard, Namespace.tenant_api):
        raise NotFoundError("No such gateway route.")
    if decision.redirect_to is not None:
        return RedirectResponse(decision.redirect_to, status_code=302)
    return await forwarder.forward(request, decision)


@router.websocket("/{full_path:path}")
async def proxy_websocket(websocket: WebSocket, full_path: str) -> None:
    path_router: PathRouter = websocket.app.state.path_router
    forwarder: ProxyForwarder = websocket.app.state.forwarder

    decision = await run_in_threadpool(path_router.classify, websocket.url.path, try_get_session(websocket))
    if not decision.is_proxied:
        logger.info("Rejected websocket for %s (%s)", websocket.url.path, decision.namespace.value)
        await websocket.close(code=1008)
        return
    await forwarder.relay_websocket(websocket, decision)
