"""
API request and response models for the gateway REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import SessionClaims, Tenant
from core.router import SECRET_PATH_RE

USERNAME_PATTERN = r"^[A-Za-z0-9_.@-]+$"
SECRET_PATH_PATTERN = SECRET_PATH_RE.pattern

# Caps request size only. Minimum length is Settings.password_min_length.
_PASSWORD_MAX = 128


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    role: str
    secret_path: str
    must_change_password: bool = False


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class SelfResponse(BaseModel):
    """Response for GET /api/v1/self -- decoded token claims plus live flags."""

    model_config = ConfigDict(frozen=True)

    tenant_id: int
    username: str
    role: str
    secret_path: str
    issued_at: int
    expires_at: int
    must_change_password: bool = False

    @classmethod
    def from_claims(cls, claims: SessionClaims, must_change_password: bool = False) -> "SelfResponse":
        return cls(
            tenant_id=claims.tenant_id,
            username=claims.username,
            role=claims.role,
            secret_path=claims.secret_path,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
            must_change_password=must_change_password,
        )


class PasswordChange(BaseModel):
    """Request body for PUT /self/password and PUT /admin/users/{id}/password."""

    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UsernameChange(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    new_username: str = Field(min_length=1, max_length=64, pattern=USERNAME_PATTERN)


class SessionRefreshResponse(BaseModel):
    """Returned by self-service writes that change token claims.

    The old token keeps working until it expires but carries stale claims;
    clients should switch to access_token.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    access_token: str
    username: str
    secret_path: str


# ---------------------------------------------------------------------------
# Admin -- tenant management
# ---------------------------------------------------------------------------


class TenantCreate(BaseModel):
    """Request body for POST /api/v1/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    role: RoleEnum = RoleEnum.user
    notes: str = Field(default="", max_length=2000)


class TenantResponse(BaseModel):
    """One row in GET /admin/users. The secret path is shown to admins only."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    secret_path: str
    sync_enabled: bool
    must_change_password: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            username=tenant.username,
            role=tenant.role,
            secret_path=tenant.secret_path,
            sync_enabled=tenant.config.sync_enabled,
            must_change_password=tenant.must_change_password,
            created_at=tenant.created_at or "",
            last_login=tenant.last_login,
        )


class TenantDetailResponse(TenantResponse):
    """GET /admin/users/{id} -- adds notes and the full config document."""

    notes: str = ""
    config: dict = Field(default_factory=dict)

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantDetailResponse":
        base = TenantResponse.from_tenant(tenant).model_dump()
        return cls(**base, notes=tenant.notes, config=tenant.config.model_dump(mode="json"))


class SecretPathSet(BaseModel):
    """Request body for PUT /admin/users/{id}/path."""

    model_config = ConfigDict(str_strip_whitespace=True)

    secret_path: str = Field(pattern=SECRET_PATH_PATTERN)


class SecretPathResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret_path: str


class NotesUpdate(BaseModel):
    notes: str = Field(max_length=2000)


# ---------------------------------------------------------------------------
# Sync settings
# ---------------------------------------------------------------------------


class SyncSettings(BaseModel):
    """Response body for GET/POST /admin/sync-settings."""

    model_config = ConfigDict(frozen=True)

    interval_hours: int


class SyncSettingsUpdate(BaseModel):
    """Request body for POST /admin/sync-settings.

    SyncGate.update_settings() validates the value, so "12", 12.5, true
    and 0 all fail with invalid_interval.
    """

    interval_hours: Any


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_hours: int
    last_run: Optional[float] = None
    next_run: Optional[float] = None
    running: bool = False


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ran: bool
    attempted: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    skipped: int = 0


# ---------------------------------------------------------------------------
# Public / misc
# ---------------------------------------------------------------------------


class PublicSettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    password_min_length: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """GET /api/v1/health. status is "degraded" if any component reports an error."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
