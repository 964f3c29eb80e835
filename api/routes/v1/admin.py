"""
api/routes/v1/admin.py -- Tenant management and sync settings (admin only).

Routes:
  GET    /api/v1/admin/users                   -- list tenants
  POST   /api/v1/admin/users                   -- create tenant
  GET    /api/v1/admin/users/{id}              -- tenant detail (notes, config)
  DELETE /api/v1/admin/users/{id}              -- delete tenant (not self)
  PUT    /api/v1/admin/users/{id}/password     -- set a tenant's password
  PUT    /api/v1/admin/users/{id}/username     -- rename a tenant
  POST   /api/v1/admin/users/{id}/reset-path   -- regenerate a tenant's secret path
  PUT    /api/v1/admin/users/{id}/path         -- set an explicit secret path
  PUT    /api/v1/admin/users/{id}/notes        -- admin notes
  GET    /api/v1/admin/sync-settings           -- current interval
  POST   /api/v1/admin/sync-settings           -- set interval (positive int hours)
  GET    /api/v1/admin/sync-settings/status    -- interval, last run, next run
  POST   /api/v1/admin/sync-settings/run       -- sweep now if the gate is open (?force=true skips the gate)

Every route depends on require_admin: 401 without a session, 403 for
non-admin roles. Role comes from the token snapshot; roles are immutable
after creation, so the snapshot cannot go stale on that field.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    MessageResponse,
    NotesUpdate,
    PasswordChange,
    SecretPathResponse,
    SecretPathSet,
    SyncRunResponse,
    SyncSettings,
    SyncSettingsUpdate,
    SyncStatusResponse,
    TenantCreate,
    TenantDetailResponse,
    TenantResponse,
    UsernameChange,
)
from api.routes.v1.self_service import check_password_policy
from auth.dependencies import require_admin
from auth.models import SessionClaims
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import InvalidRequestError
from core.sync_gate import SyncGate
from sync.scheduler import SyncScheduler

logger = logging.getLogger("subgate.api.admin")

router = APIRouter(prefix="/admin")


# ---------------------------------------------------------------------------
# Tenant management
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[TenantResponse])
def list_users(request: Request, admin: SessionClaims = Depends(require_admin)) -> list[TenantResponse]:
    store: UserStore = request.app.state.user_store
    return [TenantResponse.from_tenant(t) for t in store.list_tenants()]


@router.post("/users", response_model=TenantResponse, status_code=201)
def create_user(
    request: Request,
    body: TenantCreate,
    admin: SessionClaims = Depends(require_admin),
) -> TenantResponse:
    """Create a tenant with a fresh secret path. 409 if the username is taken."""
    check_password_policy(request, body.password)
    store: UserStore = request.app.state.user_store
    tenant = store.create_tenant(
        body.username,
        hash_password(body.password),
        role=body.role.value,
        notes=body.notes,
    )
    logger.info("Admin %s created tenant %s (%s)", admin.username, tenant.username, tenant.role)
    return TenantResponse.from_tenant(tenant)


@router.get("/users/{tenant_id}", response_model=TenantDetailResponse)
def get_user(request: Request, tenant_id: int, admin: SessionClaims = Depends(require_admin)) -> TenantDetailResponse:
    store: UserStore = request.app.state.user_store
    return TenantDetailResponse.from_tenant(store.require(tenant_id))


@router.delete("/users/{tenant_id}", status_code=204)
def delete_user(request: Request, tenant_id: int, admin: SessionClaims = Depends(require_admin)) -> Response:
    """Delete a tenant. An admin cannot delete its own account."""
    if tenant_id == admin.tenant_id:
        raise InvalidRequestError("self_deletion", "You cannot delete your own account.")
    store: UserStore = request.app.state.user_store
    store.delete_tenant(tenant_id)
    logger.info("Admin %s deleted tenant %s", admin.username, tenant_id)
    return Response(status_code=204)


@router.put("/users/{tenant_id}/password", response_model=MessageResponse)
def set_password(
    request: Request,
    tenant_id: int,
    body: PasswordChange,
    admin: SessionClaims = Depends(require_admin),
) -> MessageResponse:
    check_password_policy(request, body.new_password)
    request.app.state.user_store.update_credential(tenant_id, hash_password(body.new_password))
    return MessageResponse(message="Password updated.")


@router.put("/users/{tenant_id}/username", response_model=TenantResponse)
def set_username(
    request: Request,
    tenant_id: int,
    body: UsernameChange,
    admin: SessionClaims = Depends(require_admin),
) -> TenantResponse:
    store: UserStore = request.app.state.user_store
    store.update_username(tenant_id, body.new_username)
    return TenantResponse.from_tenant(store.require(tenant_id))


@router.post("/users/{tenant_id}/reset-path", response_model=SecretPathResponse)
def reset_user_path(
    request: Request,
    tenant_id: int,
    admin: SessionClaims = Depends(require_admin),
) -> SecretPathResponse:
    store: UserStore = request.app.state.user_store
    store.require(tenant_id)
    return SecretPathResponse(secret_path=store.reset_secret_path(tenant_id))


@router.put("/users/{tenant_id}/path", response_model=SecretPathResponse)
def set_user_path(
    request: Request,
    tenant_id: int,
    body: SecretPathSet,
    admin: SessionClaims = Depends(require_admin),
) -> SecretPathResponse:
    """Assign an explicit secret path (e.g. restoring a client's old URL). 409 if in use."""
    store: UserStore = request.app.state.user_store
    store.update_secret_path(tenant_id, body.secret_path)
    logger.info("Admin %s set secret path for tenant %s", admin.username, tenant_id)
    return SecretPathResponse(secret_path=body.secret_path)


@router.put("/users/{tenant_id}/notes", response_model=MessageResponse)
def set_notes(
    request: Request,
    tenant_id: int,
    body: NotesUpdate,
    admin: SessionClaims = Depends(require_admin),
) -> MessageResponse:
    request.app.state.user_store.update_notes(tenant_id, body.notes)
    return MessageResponse(message="Notes updated.")


# ---------------------------------------------------------------------------
# Sync settings
# ---------------------------------------------------------------------------


@router.get("/sync-settings", response_model=SyncSettings)
def get_sync_settings(request: Request, admin: SessionClaims = Depends(require_admin)) -> SyncSettings:
    gate: SyncGate = request.app.state.sync_gate
    return SyncSettings(**gate.get_settings())


@router.post("/sync-settings", response_model=SyncSettings)
def update_sync_settings(
    request: Request,
    body: SyncSettingsUpdate,
    admin: SessionClaims = Depends(require_admin),
) -> SyncSettings:
    """Set the sweep interval. 422 invalid_interval unless a positive integer."""
    gate: SyncGate = request.app.state.sync_gate
    return SyncSettings(**gate.update_settings(body.interval_hours))


@router.get("/sync-settings/status", response_model=SyncStatusResponse)
def sync_status(request: Request, admin: SessionClaims = Depends(require_admin)) -> SyncStatusResponse:
    gate: SyncGate = request.app.state.sync_gate
    scheduler: SyncScheduler = request.app.state.scheduler
    return SyncStatusResponse(**gate.status(), running=scheduler.is_running)


@router.post("/sync-settings/run", response_model=SyncRunResponse)
async def run_sync(
    request: Request,
    force: bool = Query(default=False),
    admin: SessionClaims = Depends(require_admin),
) -> SyncRunResponse:
    """Run a sweep now. ran=false when the gate is closed or a sweep is already running."""
    scheduler: SyncScheduler = request.app.state.scheduler
    logger.info("Admin %s triggered sync sweep (force=%s)", admin.username, force)
    report = await scheduler.run_once(force=force)
    if report is None:
        return SyncRunResponse(ran=False)
    return SyncRunResponse(
        ran=True,
        attempted=report.attempted,
        succeeded=report.succeeded,
        failed=report.failed,
        skipped=report.skipped,
    )
