"""
auth/guard.py -- Per-address login failure counter with lockout.

LoginGuard gates the login endpoint only. It counts failed password checks
per source address; once an address reaches max_failures it is locked for
lockout_seconds regardless of which usernames it tries or whether a later
password would be correct. A successful login clears the record.

State lives in process memory and is lost on restart. Every check-and-update
runs under a single threading.Lock because sync route handlers run in the
threadpool concurrently with each other.

The table is bounded: sweep() drops records that no longer influence any
decision (lockout over, or a stale partial count), and runs automatically
when a new address arrives at max_entries. If nothing is stale, the oldest
record is evicted, preferring ones that are not currently locked.

Layer rule: no imports from api/ or proxy/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable

from auth.models import LoginAttemptRecord

logger = logging.getLogger("subgate.auth.guard")


class LoginGuard:
    """Lock-protected failed-login table keyed by source address."""

    def __init__(
        self,
        max_failures: int = 5,
        lockout_seconds: int = 900,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_failures = max_failures
        self.lockout_seconds = lockout_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._records: dict[str, LoginAttemptRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def check_locked(self, address: str) -> bool:
        """Return True if the address may attempt a login, False while locked out."""
        with self._lock:
            record = self._records.get(address)
            return record is None or self._clock() >= record.locked_until

    def retry_after(self, address: str) -> int:
        """Seconds until the lockout for address ends (0 if not locked)."""
        with self._lock:
            record = self._records.get(address)
            if record is None:
                return 0
            return max(0, math.ceil(record.locked_until - self._clock()))

    def record_failure(self, address: str) -> bool:
        """Count one failed attempt. Returns True if this failure locked the address."""
        with self._lock:
            now = self._clock()
            record = self._records.get(address)
            if record is None:
                if len(self._records) >= self.max_entries:
                    self._sweep_locked(now)
                if self._records and len(self._records) >= self.max_entries:
                    self._evict_oldest(now)
                record = self._records[address] = LoginAttemptRecord()
            elif record.locked_until and now >= record.locked_until:
                # Previous lockout has ended; start a fresh window.
                record.failure_count = 0
                record.locked_until = 0.0
            record.failure_count += 1
            record.last_failure = now
            if record.failure_count >= self.max_failures:
                record.locked_until = now + self.lockout_seconds
                logger.warning(
                    "Login locked for %s after %d failures (%ds)",
                    address,
                    record.failure_count,
                    self.lockout_seconds,
                )
                return True
            return False

    def record_success(self, address: str) -> None:
        """Clear all failure state for the address."""
        with self._lock:
            self._records.pop(address, None)

    def sweep(self) -> int:
        """Evict records that no longer affect any decision. Returns the count removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        stale = [
            address
            for address, record in self._records.items()
            if (record.locked_until and now >= record.locked_until)
            or (not record.locked_until and now - record.last_failure >= self.lockout_seconds)
        ]
        for address in stale:
            del self._records[address]
        if stale:
            logger.info("Login guard evicted %d stale records", len(stale))
        return len(stale)

    def _evict_oldest(self, now: float) -> None:
        """Drop one record to make room, oldest unlocked first. Caller holds the lock."""
        victim = min(
            self._records,
            key=lambda address: (now < self._records[address].locked_until, self._records[address].last_failure),
        )
        del self._records[victim]
        logger.warning("Login guard full (%d entries); evicted %s", self.max_entries, victim)
