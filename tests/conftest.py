"""
tests/conftest.py -- Shared fixtures for subgate tests.

This module provides:
  - upstream / clock: fresh FakeUpstream and FakeClock per test
  - _make_store(): isolated named shared-memory SQLite UserStore
  - _patch_lifespan(): wires test components into app.state
  - gateway: TestClient over the real app plus handles on its components

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY and the slowapi cap does not trip
during login-heavy tests.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set env before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.guard import LoginGuard
from auth.models import ROLE_ADMIN, Tenant
from auth.store import UserStore
from auth.tokens import TokenService, hash_password
from core.config import get_settings
from core.router import PathRouter
from core.sync_gate import SyncGate
from sync.scheduler import SyncScheduler
from tests.fakes import SECRET_KEY, FakeClock, FakeUpstream, make_forwarder


def _make_store(prefix: str = "test") -> UserStore:
    return UserStore(db_url=f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


@dataclass
class Gateway:
    client: TestClient
    store: UserStore
    tokens: TokenService
    guard: LoginGuard
    gate: SyncGate
    scheduler: SyncScheduler
    upstream: FakeUpstream
    clock: FakeClock
    admin: Tenant

    def login(self, username: str, password: str) -> httpx.Response:
        return self.client.post("/api/v1/auth/login", json={"username": username, "password": password})

    def bearer(self, tenant: Tenant) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens.issue_for(tenant)}"}


def _patch_lifespan(state: dict):
    """Return a lifespan that installs pre-built components instead of the real ones.

    sync_task is a long sleep so shutdown has a real task to cancel; sweeps
    are driven explicitly through the admin run endpoint or the scheduler.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in state.items():
            setattr(app.state, name, value)
        app.state.sync_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sync_task.cancel()

    return test_lifespan


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(tmp_path, upstream: FakeUpstream, clock: FakeClock) -> Generator[Gateway, None, None]:
    """Yield a Gateway backed by an isolated store, fake upstream and fake clock.

    Seeds one admin (admin / adminpass1). Tokens use the real clock so the
    TestClient's own requests verify normally; lockout and sync timing use
    the fake clock.
    """
    settings = get_settings()
    store = _make_store("api")
    admin = store.create_tenant("admin", hash_password("adminpass1"), role=ROLE_ADMIN)
    tokens = TokenService(SECRET_KEY, default_ttl=3600)
    guard = LoginGuard(max_failures=5, lockout_seconds=900, clock=clock)
    path_router = PathRouter(store)
    forwarder = make_forwarder(upstream)
    gate = SyncGate(tmp_path / "sync_state.json", default_interval_hours=24, clock=clock)
    scheduler = SyncScheduler(gate, store, tokens, path_router, forwarder, token_ttl=300)

    app.router.lifespan_context = _patch_lifespan(
        {
            "settings": settings,
            "user_store": store,
            "tokens": tokens,
            "login_guard": guard,
            "path_router": path_router,
            "forwarder": forwarder,
            "sync_gate": gate,
            "scheduler": scheduler,
        }
    )

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Gateway(
            client=client,
            store=store,
            tokens=tokens,
            guard=guard,
            gate=gate,
            scheduler=scheduler,
            upstream=upstream,
            clock=clock,
            admin=admin,
        )

    store.close()
