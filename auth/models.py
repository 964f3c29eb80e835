"""
auth/models.py -- Domain dataclasses for tenants, sessions and login attempts.

Pattern: Data class (pure data container, zero logic). Stores, services and
routes do the work.

Layer rule: no imports from api/ or proxy/. core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from core.tenant_config import TenantConfig

ROLE_ADMIN = "admin"
ROLE_USER = "user"


@dataclass
class Tenant:
    """One isolated namespace in front of the shared upstream engine.

    secret_path is 32 lowercase hex characters without a leading slash. It is
    a bearer capability: anyone who knows it reaches the tenant's engine data.

    role is fixed at creation. must_change_password is set on the
    auto-provisioned default admin and cleared by the first password change.
    """

    username: str
    secret_path: str
    role: str = ROLE_USER
    id: int | None = None
    hashed_password: str | None = None
    config: TenantConfig = field(default_factory=TenantConfig)
    notes: str = ""
    must_change_password: bool = False
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Decoded session token.

    role and secret_path are a snapshot taken at issue time and may lag
    behind the store until the token expires.
    """

    tenant_id: int
    username: str
    role: str
    secret_path: str
    issued_at: int
    expires_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class LoginAttemptRecord:
    """Failed-login bookkeeping for one source address (memory only)."""

    failure_count: int = 0
    locked_until: float = 0.0
    last_failure: float = 0.0
