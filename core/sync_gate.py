"""
core/sync_gate.py -- Durable interval gate for scheduled sync sweeps.

SyncGate owns one small JSON document:

    {"interval_hours": 24, "last_run": 1760000000.0}

should_run() is true once interval_hours have passed since last_run
(last_run == 0 means "never ran" and is always eligible). The scheduler's
timer cadence is independent; the gate only decides whether a wake-up does
any work.

The file is the only copy of the state. Every read loads it, and every write
starts from a fresh load and changes one field, so an update made by another
SyncGate over the same path (the set-sync-interval CLI against a running
server) is seen on the next call and never written back over. A lock
serializes read-modify-write within the process, and the file is replaced
atomically (write temp file in the same directory, fsync, os.replace) so a
reader never sees a torn document.

Layer rule: no imports from api/, auth/ or proxy/.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from core.errors import InvalidIntervalError

logger = logging.getLogger("subgate.sync_gate")

SECONDS_PER_HOUR = 3600


@dataclass(frozen=True)
class SyncGateState:
    interval_hours: int
    last_run: float = 0.0


class SyncGate:
    """Persisted interval/last-run pair with atomic updates.

    Usage:
        gate = SyncGate("data/sync_state.json", default_interval_hours=24)
        if gate.should_run():
            ...sweep...
            gate.mark_complete()
    """

    def __init__(
        self,
        path: str | Path,
        default_interval_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self._default_interval = default_interval_hours
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_settings(self) -> dict:
        with self._lock:
            return {"interval_hours": self._load().interval_hours}

    def update_settings(self, hours) -> dict:
        """Set the sync interval. Raises InvalidIntervalError unless hours is a positive int."""
        # bool is an int subclass; True must not mean "1 hour".
        if isinstance(hours, bool) or not isinstance(hours, int) or hours < 1:
            raise InvalidIntervalError(detail=f"got {hours!r}")
        with self._lock:
            state = self._load()
            if state.interval_hours != hours:
                self._write(replace(state, interval_hours=hours))
                logger.info("Sync interval set to %dh", hours)
        return {"interval_hours": hours}

    def should_run(self) -> bool:
        with self._lock:
            state = self._load()
        if not state.last_run:
            return True
        return self._clock() - state.last_run >= state.interval_hours * SECONDS_PER_HOUR

    def mark_complete(self) -> None:
        with self._lock:
            self._write(replace(self._load(), last_run=self._clock()))
        logger.info("Sync sweep marked complete")

    def status(self) -> dict:
        """Interval, last run and next eligible time (epoch seconds, None if eligible now)."""
        with self._lock:
            state = self._load()
        next_run = None
        if state.last_run:
            next_run = state.last_run + state.interval_hours * SECONDS_PER_HOUR
            if next_run <= self._clock():
                next_run = None
        return {
            "interval_hours": state.interval_hours,
            "last_run": state.last_run or None,
            "next_run": next_run,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> SyncGateState:
        """Read the document, falling back to defaults for missing or bad data. Caller holds the lock."""
        default = SyncGateState(interval_hours=self._default_interval)
        if not self.path.exists():
            return default
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read sync state %s, using defaults: %s", self.path, exc)
            return default
        interval = raw.get("interval_hours") if isinstance(raw, dict) else None
        last_run = raw.get("last_run") if isinstance(raw, dict) else None
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            interval = self._default_interval
        if isinstance(last_run, bool) or not isinstance(last_run, (int, float)) or last_run < 0:
            last_run = 0.0
        return SyncGateState(interval_hours=interval, last_run=float(last_run))

    def _write(self, state: SyncGateState) -> None:
        """Atomically replace the document on disk. Caller holds the lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".sync_state.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(state), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
