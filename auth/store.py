"""
auth/store.py -- SQLAlchemy Core persistence layer for tenants.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_tenant is the mapper. Route, router and
scheduler code never touches SQL directly.

Invariants enforced here:
  username and secret_path are UNIQUE at the SQL level. Any write that would
  duplicate either raises ConflictError, so two tenants can never share a
  secret path, whether at creation, on reset, or on an explicit admin set.

  get_by_secret_path() compares the full stored value for equality. There is
  no prefix matching anywhere in the lookup path.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: data/gateway.db by default (Settings.database_url).

Layer rule: no imports from api/ or proxy/. core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ROLE_ADMIN, Tenant
from auth.tokens import generate_secret_path, hash_password
from core.errors import ConfigError, ConflictError, NotFoundError
from core.tenant_config import TenantConfig, dump_tenant_config, parse_tenant_config

logger = logging.getLogger("subgate.store")

# Attempts at drawing a non-colliding secret path before giving up. With 128
# bits of entropy a single retry is already astronomically unlikely.
_SECRET_PATH_ATTEMPTS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tenants = Table(
    "tenants",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("secret_path", String(32), nullable=False, unique=True),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("config", Text),  # TenantConfig JSON
    Column("notes", Text, nullable=False, server_default=""),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Tenant entities.

    Usage:
        store = UserStore()
        tenant = store.create_tenant("alice", hash_password("wonderland"))
        same = store.get_by_secret_path(tenant.secret_path)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            Path(db_url.split("///", 1)[-1]).parent.mkdir(parents=True, exist_ok=True)
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            event.listen(self.engine, "connect", _set_wal_mode)
        else:
            self.engine = create_engine(db_url, connect_args=connect_args)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_tenants(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_tenants)).scalar()
        return (result or 0) > 0

    def get_by_id(self, tenant_id: int) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def get_by_username(self, username: str) -> Tenant | None:
        """Look up a tenant by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.username == username)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def get_by_secret_path(self, secret_path: str) -> Tenant | None:
        """Look up the tenant whose current secret path equals secret_path exactly."""
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.secret_path == secret_path)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def require(self, tenant_id: int) -> Tenant:
        """get_by_id() that raises NotFoundError instead of returning None."""
        tenant = self.get_by_id(tenant_id)
        if tenant is None:
            raise NotFoundError()
        return tenant

    def list_tenants(self) -> list[Tenant]:
        """Return all tenants ordered by id."""
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.id)).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def list_sync_tenants(self) -> list[Tenant]:
        """Return tenants whose config opts into scheduled sync.

        Rows with an unreadable config document are skipped and logged rather
        than failing the whole listing.
        """
        result = []
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.id)).fetchall()
        for row in rows:
            try:
                tenant = _row_to_tenant(row)
            except ConfigError:
                logger.warning("Skipping tenant %s with unreadable config", row.id, exc_info=True)
                continue
            if tenant.config.sync_enabled:
                result.append(tenant)
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_tenant(
        self,
        username: str,
        hashed_password: str,
        role: str = "user",
        config: TenantConfig | None = None,
        notes: str = "",
        must_change_password: bool = False,
        secret_path: str | None = None,
    ) -> Tenant:
        """Insert a new tenant with a freshly generated secret path.

        Raises ConflictError if the username (or an explicit secret_path) is
        already taken. A randomly generated path that happens to collide is
        redrawn.
        """
        attempts = 1 if secret_path is not None else _SECRET_PATH_ATTEMPTS
        for _ in range(attempts):
            path = secret_path or generate_secret_path()
            try:
                with self.engine.connect() as conn:
                    result = conn.execute(
                        _tenants.insert().values(
                            username=username,
                            hashed_password=hashed_password,
                            secret_path=path,
                            role=role,
                            config=dump_tenant_config(config or TenantConfig()),
                            notes=notes,
                            must_change_password=1 if must_change_password else 0,
                            created_at=_now_iso(),
                        )
                    )
                    conn.commit()
            except IntegrityError as exc:
                if self.get_by_username(username) is not None:
                    raise ConflictError("A tenant with that username already exists.") from exc
                if secret_path is not None:
                    raise ConflictError("That secret path is already in use.") from exc
                continue
            return self.require(result.inserted_primary_key[0])
        raise ConflictError("Could not allocate a unique secret path.")

    def update_credential(self, tenant_id: int, hashed_password: str) -> None:
        """Replace the password hash and clear the must-change flag."""
        self._update(tenant_id, hashed_password=hashed_password, must_change_password=0)

    def update_username(self, tenant_id: int, username: str) -> None:
        try:
            self._update(tenant_id, username=username)
        except IntegrityError as exc:
            raise ConflictError("A tenant with that username already exists.") from exc

    def update_secret_path(self, tenant_id: int, secret_path: str) -> None:
        try:
            self._update(tenant_id, secret_path=secret_path)
        except IntegrityError as exc:
            raise ConflictError("That secret path is already in use.") from exc

    def reset_secret_path(self, tenant_id: int) -> str:
        """Replace the tenant's secret path with a fresh unique one and return it."""
        for _ in range(_SECRET_PATH_ATTEMPTS):
            path = generate_secret_path()
            try:
                self.update_secret_path(tenant_id, path)
            except ConflictError:
                continue
            logger.info("Secret path reset for tenant %s", tenant_id)
            return path
        raise ConflictError("Could not allocate a unique secret path.")

    def update_config(self, tenant_id: int, config: TenantConfig) -> None:
        self._update(tenant_id, config=dump_tenant_config(config))

    def update_notes(self, tenant_id: int, notes: str) -> None:
        self._update(tenant_id, notes=notes)

    def update_last_login(self, tenant_id: int) -> None:
        self._update(tenant_id, last_login=_now_iso())

    def delete_tenant(self, tenant_id: int) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(_tenants.delete().where(_tenants.c.id == tenant_id))
            conn.commit()
        if result.rowcount == 0:
            raise NotFoundError()

    def ensure_default_admin(self, username: str, password: str) -> Tenant | None:
        """Provision the first admin on an empty store.

        Returns the created tenant, or None if any tenant already exists. The
        account is flagged must_change_password so the dashboard forces a new
        password on first login.
        """
        if self.has_tenants():
            return None
        try:
            tenant = self.create_tenant(
                username,
                hash_password(password),
                role=ROLE_ADMIN,
                must_change_password=True,
            )
        except ConflictError:
            # Another worker provisioned it first.
            return None
        logger.warning("Created default admin account '%s'. Change its password after first login.", username)
        return tenant

    def close(self) -> None:
        self.engine.dispose()

    def _update(self, tenant_id: int, **fields) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(_tenants.update().where(_tenants.c.id == tenant_id).values(**fields))
            conn.commit()
        if result.rowcount == 0:
            raise NotFoundError()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    return Tenant(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        secret_path=row.secret_path,
        role=row.role,
        config=parse_tenant_config(row.config),
        notes=row.notes or "",
        must_change_password=bool(row.must_change_password),
        created_at=row.created_at,
        last_login=row.last_login,
    )
