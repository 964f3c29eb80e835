"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two token transports are checked in priority order:
  1. "access_token" cookie -- set by the dashboard login flow.
  2. Authorization: Bearer <token> header -- scripts and the sync scheduler.

Authentication is stateless: a request is authenticated iff its token
verifies against the current signing key and has not expired. Claims are
not re-checked against the store here (role and secret path are a
snapshot bounded by the token TTL). Handlers that mutate a tenant load the
current record themselves.

try_get_session() is the soft variant (returns None on failure).
get_current_session() raises AuthError (401) if unauthenticated.
require_admin() additionally raises ForbiddenError (403) for non-admins.

Layer rule: may import from fastapi/starlette because this module is part of
the dependency injection system. No imports from api/ or proxy/.
"""

from __future__ import annotations

from starlette.requests import HTTPConnection

from auth.models import SessionClaims
from auth.tokens import COOKIE_NAME, TokenService
from core.errors import AuthError, ForbiddenError


def extract_token(conn: HTTPConnection) -> str | None:
    """Return the raw session token from cookie or bearer header, if any."""
    token = conn.cookies.get(COOKIE_NAME)
    if token:
        return token
    auth_header = conn.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_session(conn: HTTPConnection) -> SessionClaims | None:
    """Verify the connection's token. Returns None on any failure, never raises.

    Accepts both HTTP requests and websockets (HTTPConnection is their base).
    """
    token = extract_token(conn)
    if not token:
        return None
    tokens: TokenService = conn.app.state.tokens
    try:
        return tokens.verify(token)
    except AuthError:
        return None


def get_current_session(conn: HTTPConnection) -> SessionClaims:
    """Require a valid session. Raises the specific AuthError subclass on failure.

    Use as a FastAPI dependency:
        @router.get("/self")
        async def route(claims: SessionClaims = Depends(get_current_session)): ...
    """
    token = extract_token(conn)
    if not token:
        raise AuthError()
    tokens: TokenService = conn.app.state.tokens
    return tokens.verify(token)


def require_admin(conn: HTTPConnection) -> SessionClaims:
    """Require an admin session. 401 if unauthenticated, 403 if not admin."""
    claims = get_current_session(conn)
    if not claims.is_admin:
        raise ForbiddenError()
    return claims
