"""
auth/tokens.py -- Session tokens, password hashing and secret-path generation.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry tenant_id, username (sub), role,
       secret_path, iat and exp. The server keeps no session table; a token is
       valid iff its signature matches the current SECRET_KEY and it has not
       expired. TokenService.verify() raises a specific AuthError subclass so
       the route layer can tell "expired" from "tampered" in its response.

  Expiry: jose only rejects a token strictly after exp. The gateway treats
       now >= exp as expired, so verify() checks exp against its own clock
       (injectable for tests) and disables jose's built-in exp check.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_tenant() so response time does not reveal
       whether a username exists.

  Secret paths: secrets.token_hex(16) gives 128 bits of entropy rendered as
       32 lowercase hex characters -- the capability that grants access to a
       tenant's engine namespace.

Layer rule: no imports from api/ or proxy/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import SessionClaims
from core.errors import ExpiredTokenError, MalformedTokenError, SignatureError

if TYPE_CHECKING:
    from auth.models import Tenant
    from auth.store import UserStore

logger = logging.getLogger("subgate.auth")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "tenant_id", "role", "secret_path", "iat", "exp")

SECRET_PATH_BYTES = 16
COOKIE_NAME = "access_token"


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 128 characters, which keeps ASCII inputs under that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("subgate_timing_dummy")


def authenticate_tenant(store: UserStore, username: str, password: str) -> Tenant | None:
    """Check a username/password pair with timing equalization.

    Always runs bcrypt whether or not the tenant exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Tenant on success, None on any failure.
    """
    tenant = store.get_by_username(username)
    if tenant is None or tenant.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, tenant.hashed_password):
        return None
    return tenant


def generate_secret_path() -> str:
    """Return a fresh 32-character lowercase hex secret path."""
    return secrets.token_hex(SECRET_PATH_BYTES)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TokenService:
    """Issue and verify signed session tokens.

    The signing key is fixed for the lifetime of the instance. The app creates
    one instance at startup from Settings.secret_key and stores it on
    app.state.tokens.

    Usage:
        tokens = TokenService(settings.secret_key, default_ttl=3600)
        token = tokens.issue(1, "alice", "user", "0f1e...")
        claims = tokens.verify(token)
    """

    def __init__(self, secret_key: str, default_ttl: int = 86400, clock: Callable[[], float] = time.time) -> None:
        self._secret_key = secret_key
        self.default_ttl = default_ttl
        self._clock = clock

    def issue(self, tenant_id: int, username: str, role: str, secret_path: str, ttl: int | None = None) -> str:
        """Encode a signed token that expires ttl seconds from now."""
        duration = ttl if ttl is not None and ttl > 0 else self.default_ttl
        now = int(self._clock())
        payload = {
            "sub": username,
            "tenant_id": tenant_id,
            "role": role,
            "secret_path": secret_path,
            "iat": now,
            "exp": now + duration,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def issue_for(self, tenant: Tenant, ttl: int | None = None) -> str:
        return self.issue(tenant.id, tenant.username, tenant.role, tenant.secret_path, ttl)

    def verify(self, token: str) -> SessionClaims:
        """Decode and verify a token.

        Raises:
            MalformedTokenError: not a JWT, or required claims missing.
            SignatureError:      signature does not match the current key.
            ExpiredTokenError:   current time is at or past the embedded exp.
        """
        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError(detail=str(exc)) from exc
        if any(claim not in unverified for claim in _REQUIRED_CLAIMS):
            raise MalformedTokenError(detail="missing required claims")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise SignatureError(detail=str(exc)) from exc

        try:
            claims = SessionClaims(
                tenant_id=int(payload["tenant_id"]),
                username=str(payload["sub"]),
                role=str(payload["role"]),
                secret_path=str(payload["secret_path"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError(detail=str(exc)) from exc

        if self._clock() >= claims.expires_at:
            raise ExpiredTokenError()
        return claims


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    path="/" is required: the cookie must reach the frontend proxy namespace
    at the root as well as /api. max_age matches the token expiry.
    """
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )
