"""
api/routes/v1/self_service.py -- Tenant self-service endpoints.

Routes:
  GET  /api/v1/self             -- decoded token claims (+ must_change_password)
  PUT  /api/v1/self/password    -- change own password
  PUT  /api/v1/self/username    -- change own username; re-issues the token
  POST /api/v1/self/reset-path  -- new secret path; re-issues the token
  GET  /api/v1/self/config      -- read own TenantConfig
  POST /api/v1/self/config      -- replace own TenantConfig

All routes require a valid session (get_current_session). Writes load the
tenant's current store record first, so a token that outlived its tenant is
rejected with 401 instead of writing to a missing row.

After reset-path the old secret path stops routing immediately; requests
already in flight keep the path they were dispatched with.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from api.models import MessageResponse, PasswordChange, SelfResponse, SessionRefreshResponse, UsernameChange
from auth.dependencies import get_current_session
from auth.models import SessionClaims, Tenant
from auth.store import UserStore
from auth.tokens import TokenService, hash_password, set_auth_cookie
from core.errors import AuthError, InvalidRequestError
from core.tenant_config import parse_tenant_config

logger = logging.getLogger("subgate.api.self")

router = APIRouter()


def _current_tenant(request: Request, claims: SessionClaims) -> Tenant:
    store: UserStore = request.app.state.user_store
    tenant = store.get_by_id(claims.tenant_id)
    if tenant is None:
        raise AuthError("Account no longer exists.")
    return tenant


def check_password_policy(request: Request, password: str) -> None:
    """Raise InvalidRequestError if password is shorter than the configured minimum."""
    minimum = request.app.state.settings.password_min_length
    if len(password) < minimum:
        raise InvalidRequestError("weak_password", f"Password must be at least {minimum} characters.")


def _refreshed_session(request: Request, tenant: Tenant, message: str) -> JSONResponse:
    """Issue a token with the tenant's current claims and set it as the cookie."""
    tokens: TokenService = request.app.state.tokens
    token = tokens.issue_for(tenant)
    resp = JSONResponse(
        content=SessionRefreshResponse(
            message=message,
            access_token=token,
            username=tenant.username,
            secret_path=tenant.secret_path,
        ).model_dump()
    )
    set_auth_cookie(resp, token, tokens.default_ttl, secure=request.app.state.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/self", response_model=SelfResponse)
def get_self(request: Request, claims: SessionClaims = Depends(get_current_session)) -> SelfResponse:
    tenant = _current_tenant(request, claims)
    return SelfResponse.from_claims(claims, must_change_password=tenant.must_change_password)


@router.put("/self/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    claims: SessionClaims = Depends(get_current_session),
) -> MessageResponse:
    check_password_policy(request, body.new_password)
    tenant = _current_tenant(request, claims)
    request.app.state.user_store.update_credential(tenant.id, hash_password(body.new_password))
    logger.info("Tenant %s changed password", tenant.username)
    return MessageResponse(message="Password updated.")


@router.put("/self/username", response_model=SessionRefreshResponse)
def change_username(
    request: Request,
    body: UsernameChange,
    claims: SessionClaims = Depends(get_current_session),
) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    tenant = _current_tenant(request, claims)
    store.update_username(tenant.id, body.new_username)
    logger.info("Tenant %s renamed to %s", tenant.username, body.new_username)
    return _refreshed_session(request, store.require(tenant.id), "Username updated.")


@router.post("/self/reset-path", response_model=SessionRefreshResponse)
def reset_path(request: Request, claims: SessionClaims = Depends(get_current_session)) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    tenant = _current_tenant(request, claims)
    store.reset_secret_path(tenant.id)
    return _refreshed_session(request, store.require(tenant.id), "Secret path regenerated.")


@router.get("/self/config")
def get_config(request: Request, claims: SessionClaims = Depends(get_current_session)) -> dict:
    return _current_tenant(request, claims).config.model_dump(mode="json")


@router.post("/self/config")
def update_config(
    request: Request,
    body: dict[str, Any] = Body(...),
    claims: SessionClaims = Depends(get_current_session),
) -> dict:
    """Replace the tenant config. Invalid documents fail with 422 config_error."""
    tenant = _current_tenant(request, claims)
    config = parse_tenant_config(body)
    request.app.state.user_store.update_config(tenant.id, config)
    return config.model_dump(mode="json")
