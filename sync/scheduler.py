"""
sync/scheduler.py -- Scheduled refresh sweeps across tenants.

SyncScheduler.run_once() is what the background timer calls on every tick:

  1. Ask the SyncGate whether a sweep is due. If not, return None and touch
     nothing else (no store reads, no upstream calls).
  2. List tenants whose config has sync_enabled, bounded by an optional
     batch size and time budget.
  3. For each tenant, mint a short-lived session token, verify it and
     classify GET /<secret_path>/api/utils/refresh with its claims through
     the same PathRouter a real client request would use. The decision must
     belong to the token's tenant. The call then goes out through
     ProxyForwarder.fetch(); the token itself stays inside the gateway.
  4. Call gate.mark_complete() exactly once, however many tenants failed.

Per-tenant failures are logged and recorded in the SweepReport; they never
abort the sweep. sync_loop() wraps run_once() so an unexpected error is
logged and the loop keeps ticking.

The scheduler shares nothing with request handlers except the SyncGate
document and the store/forwarder calls, so tests drive it directly with a
fake clock instead of a live timer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from starlette.concurrency import run_in_threadpool

from auth.models import Tenant
from auth.store import UserStore
from auth.tokens import TokenService
from core.router import PathRouter
from core.sync_gate import SyncGate
from proxy.forwarder import ProxyForwarder

logger = logging.getLogger("subgate.sync")

REFRESH_PATH = "/api/utils/refresh"


@dataclass
class SweepReport:
    """Outcome of one sweep. failed maps username -> reason."""

    attempted: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: int = 0
    duration_seconds: float = 0.0


class SweepFailure(Exception):
    """A single tenant's refresh did not succeed."""


class SyncScheduler:
    """Gate-checked refresh sweep over opted-in tenants."""

    def __init__(
        self,
        gate: SyncGate,
        store: UserStore,
        tokens: TokenService,
        router: PathRouter,
        forwarder: ProxyForwarder,
        token_ttl: int = 300,
        batch_size: int = 0,
        time_budget_seconds: float = 0.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gate = gate
        self.store = store
        self.tokens = tokens
        self.router = router
        self.forwarder = forwarder
        self.token_ttl = token_ttl
        self.batch_size = batch_size
        self.time_budget_seconds = time_budget_seconds
        self._monotonic = monotonic
        self._running = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def run_once(self, force: bool = False) -> SweepReport | None:
        """Run a sweep if the gate is open (or force is set).

        Returns None when the gate is closed or another sweep is in progress.
        """
        if not force and not await run_in_threadpool(self.gate.should_run):
            return None
        if self._running.locked():
            logger.info("Sync sweep already in progress; skipping")
            return None
        async with self._running:
            report = await self._sweep()
            await run_in_threadpool(self.gate.mark_complete)
        logger.info(
            "Sync sweep finished: %d attempted, %d ok, %d failed, %d skipped in %.1fs",
            report.attempted,
            len(report.succeeded),
            len(report.failed),
            report.skipped,
            report.duration_seconds,
        )
        return report

    async def _sweep(self) -> SweepReport:
        report = SweepReport()
        started = self._monotonic()
        tenants = await run_in_threadpool(self.store.list_sync_tenants)
        if self.batch_size > 0 and len(tenants) > self.batch_size:
            report.skipped = len(tenants) - self.batch_size
            tenants = tenants[: self.batch_size]

        for index, tenant in enumerate(tenants):
            if self.time_budget_seconds > 0 and self._monotonic() - started >= self.time_budget_seconds:
                report.skipped += len(tenants) - index
                logger.warning("Sync time budget exhausted; %d tenants deferred", len(tenants) - index)
                break
            report.attempted += 1
            try:
                await self.refresh_tenant(tenant)
            except Exception as exc:
                # One tenant must never take the sweep down.
                logger.warning("Sync refresh failed for tenant %s: %s", tenant.username, exc)
                report.failed[tenant.username] = str(exc) or type(exc).__name__
            else:
                report.succeeded.append(tenant.username)

        report.duration_seconds = self._monotonic() - started
        return report

    async def refresh_tenant(self, tenant: Tenant) -> None:
        """Send the engine refresh call for one tenant. Raises on any failure."""
        token = self.tokens.issue_for(tenant, ttl=self.token_ttl)
        claims = self.tokens.verify(token)
        decision = await run_in_threadpool(self.router.classify, f"/{tenant.secret_path}{REFRESH_PATH}", claims)
        if not decision.is_proxied or decision.tenant_id != claims.tenant_id:
            raise SweepFailure("secret path no longer routes to the tenant")
        response = await self.forwarder.fetch(decision, "GET")
        if response.status_code >= 400:
            raise SweepFailure(f"upstream returned HTTP {response.status_code}")


async def sync_loop(scheduler: SyncScheduler, tick_seconds: float) -> None:
    """Wake every tick_seconds and let the gate decide whether to sweep.

    Runs as a background asyncio task started in the app lifespan.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(tick_seconds)
        try:
            await scheduler.run_once()
        except Exception:
            logger.exception("Sync sweep crashed; retrying on next tick")
