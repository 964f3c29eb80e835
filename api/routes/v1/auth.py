"""
api/routes/v1/auth.py -- Login, logout and public settings endpoints.

Routes:
  POST /api/v1/auth/login       -- password login; sets session cookie
  POST /api/v1/auth/logout      -- clears cookie
  GET  /api/v1/settings/public  -- values the login page needs before auth

Security:
  LoginGuard is consulted before any password check. A locked address gets
  429 + Retry-After without bcrypt running at all, even if the password it
  sends is correct.
  authenticate_tenant() provides timing equalization -- never inline
  get_by_username() + verify_password().
  Wrong username and wrong password return the same bad_credentials error.
  slowapi adds a coarse per-IP request cap on top.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LoginResponse, MessageResponse, PublicSettingsResponse
from auth.guard import LoginGuard
from auth.store import UserStore
from auth.tokens import COOKIE_NAME, TokenService, authenticate_tenant, set_auth_cookie
from core.errors import BadCredentialsError, RateLimitedError

logger = logging.getLogger("subgate.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:       public
# - POST /api/v1/auth/logout:      public -- clearing a cookie needs no prior auth
# - GET  /api/v1/settings/public:  public
router = APIRouter()


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie."""
    guard: LoginGuard = request.app.state.login_guard
    store: UserStore = request.app.state.user_store
    tokens: TokenService = request.app.state.tokens
    address = get_remote_address(request)

    if not guard.check_locked(address):
        raise RateLimitedError(retry_after=guard.retry_after(address))

    tenant = authenticate_tenant(store, body.username, body.password)
    if tenant is None:
        guard.record_failure(address)
        logger.info("Failed login for '%s' from %s", body.username, address)
        raise BadCredentialsError()

    guard.record_success(address)
    store.update_last_login(tenant.id)
    token = tokens.issue_for(tenant)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=tokens.default_ttl,
            username=tenant.username,
            role=tenant.role,
            secret_path=tenant.secret_path,
            must_change_password=tenant.must_change_password,
        ).model_dump(),
    )
    set_auth_cookie(resp, token, tokens.default_ttl, secure=request.app.state.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the session cookie. Tokens are stateless, so nothing is revoked server-side."""
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie(COOKIE_NAME, path="/")
    return resp


@router.get("/settings/public", response_model=PublicSettingsResponse)
async def public_settings(request: Request) -> PublicSettingsResponse:
    return PublicSettingsResponse(password_min_length=request.app.state.settings.password_min_length)
