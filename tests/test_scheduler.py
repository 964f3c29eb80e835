"""Unit tests for sync/scheduler.py -- gate-checked refresh sweeps.

Covers:
- closed gate: run_once() returns None with no store reads or upstream calls
- open gate: each opted-in tenant gets GET /api/utils/refresh on the API
  origin; the session token minted for the sweep is not sent upstream
- a token that does not belong to the routed tenant fails that tenant
- per-tenant failures (HTTP error, transport error) never abort the sweep
- mark_complete() runs exactly once per sweep, even when every tenant fails
- batch size and time budget defer the remainder
- force=True bypasses the gate
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from auth.store import UserStore
from auth.tokens import TokenService
from core.router import PathRouter
from core.sync_gate import SyncGate
from core.tenant_config import TenantConfig
from sync.scheduler import REFRESH_PATH, SweepFailure, SyncScheduler
from tests.fakes import API_URL, SECRET_KEY, FakeClock, FakeUpstream, make_forwarder


@pytest.fixture
def store() -> UserStore:
    s = UserStore(f"sqlite:///file:sched_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    for name in ("alice", "bob", "carol"):
        s.create_tenant(name, "x")
    dave = s.create_tenant("dave", "x")
    s.update_config(dave.id, TenantConfig(sync_enabled=False))
    yield s
    s.close()


@pytest.fixture
def gate(tmp_path, clock: FakeClock) -> SyncGate:
    return SyncGate(tmp_path / "sync_state.json", default_interval_hours=24, clock=clock)


def _scheduler(store, gate, upstream, **kwargs) -> SyncScheduler:
    tokens = TokenService(SECRET_KEY, default_ttl=3600)
    return SyncScheduler(gate, store, tokens, PathRouter(store), make_forwarder(upstream), **kwargs)


def test_sweep_refreshes_opted_in_tenants(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    scheduler = _scheduler(store, gate, upstream)
    report = asyncio.run(scheduler.run_once())

    assert report.attempted == 3
    assert report.succeeded == ["alice", "bob", "carol"]
    assert report.failed == {}
    assert len(upstream.requests) == 3
    for request, name in zip(upstream.requests, ["alice", "bob", "carol"]):
        assert str(request.url) == API_URL + REFRESH_PATH
        assert request.method == "GET"
        assert "authorization" not in request.headers
        assert request.headers["x-forwarded-prefix"] == "/" + store.get_by_username(name).secret_path
    assert not gate.should_run()


def test_closed_gate_has_no_side_effects(gate: SyncGate, upstream: FakeUpstream) -> None:
    gate.mark_complete()
    store = MagicMock(spec=UserStore)
    scheduler = _scheduler(store, gate, upstream)

    assert asyncio.run(scheduler.run_once()) is None
    store.list_sync_tenants.assert_not_called()
    assert upstream.requests == []


def test_failures_do_not_abort_sweep(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    upstream.status_for[REFRESH_PATH] = 500
    gate.mark_complete = MagicMock(wraps=gate.mark_complete)
    scheduler = _scheduler(store, gate, upstream)

    report = asyncio.run(scheduler.run_once())

    assert report.attempted == 3
    assert report.succeeded == []
    assert set(report.failed) == {"alice", "bob", "carol"}
    assert "500" in report.failed["alice"]
    gate.mark_complete.assert_called_once()


def test_transport_error_is_a_tenant_failure(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    upstream.fail = True
    report = asyncio.run(_scheduler(store, gate, upstream).run_once())
    assert len(report.failed) == 3
    assert not gate.should_run()


def test_batch_size_defers_remainder(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    report = asyncio.run(_scheduler(store, gate, upstream, batch_size=2).run_once())
    assert report.attempted == 2
    assert report.skipped == 1


def test_time_budget_defers_remainder(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    ticks = iter([0.0, 0.0, 5.0, 11.0, 11.0])
    scheduler = _scheduler(store, gate, upstream, time_budget_seconds=10.0, monotonic=lambda: next(ticks))
    report = asyncio.run(scheduler.run_once())
    assert report.attempted == 2
    assert report.skipped == 1


def test_force_bypasses_gate(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    gate.mark_complete()
    scheduler = _scheduler(store, gate, upstream)
    assert asyncio.run(scheduler.run_once()) is None
    report = asyncio.run(scheduler.run_once(force=True))
    assert report is not None and report.attempted == 3


def test_refresh_rejects_decision_for_another_tenant(store: UserStore, gate: SyncGate, upstream: FakeUpstream) -> None:
    scheduler = _scheduler(store, gate, upstream)
    alice = store.get_by_username("alice")
    bob = store.get_by_username("bob")
    impostor = replace(alice, secret_path=bob.secret_path)

    with pytest.raises(SweepFailure):
        asyncio.run(scheduler.refresh_tenant(impostor))
    assert upstream.requests == []
