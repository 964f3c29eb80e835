"""Unit tests for core/sync_gate.py -- persisted sync interval and last run.

Covers:
- a fresh gate is open; mark_complete() closes it for interval_hours
- lowering the interval reopens an already-elapsed window immediately
- update_settings() accepts positive ints only and is idempotent
- state survives a new SyncGate over the same file
- unreadable or invalid documents fall back to defaults
- another instance over the same file: its writes are seen and kept
- a failed write leaves the previous document in place
"""

from __future__ import annotations

import json
import os

import pytest

from core.errors import InvalidIntervalError
from core.sync_gate import SyncGate
from tests.fakes import FakeClock

HOUR = 3600


@pytest.fixture
def gate(tmp_path, clock: FakeClock) -> SyncGate:
    return SyncGate(tmp_path / "state" / "sync_state.json", default_interval_hours=24, clock=clock)


def test_fresh_gate_is_open(gate: SyncGate) -> None:
    assert gate.should_run()
    assert gate.status() == {"interval_hours": 24, "last_run": None, "next_run": None}


def test_closed_until_interval_elapses(gate: SyncGate, clock: FakeClock) -> None:
    gate.mark_complete()
    started = clock.now
    assert not gate.should_run()
    assert gate.status()["next_run"] == started + 24 * HOUR
    clock.now += 24 * HOUR - 1
    assert not gate.should_run()
    clock.now += 1
    assert gate.should_run()


def test_lowering_interval_reopens_gate(gate: SyncGate, clock: FakeClock) -> None:
    gate.mark_complete()
    clock.now += 2 * HOUR
    assert not gate.should_run()
    gate.update_settings(1)
    assert gate.should_run()


def test_update_is_idempotent(gate: SyncGate) -> None:
    assert gate.update_settings(6) == {"interval_hours": 6}
    mtime = gate.path.stat().st_mtime_ns
    assert gate.update_settings(6) == {"interval_hours": 6}
    assert gate.path.stat().st_mtime_ns == mtime
    assert gate.get_settings() == {"interval_hours": 6}


@pytest.mark.parametrize("bad", [0, -3, 1.5, "12", True, None])
def test_rejects_non_positive_int(gate: SyncGate, bad) -> None:
    with pytest.raises(InvalidIntervalError):
        gate.update_settings(bad)
    assert gate.get_settings() == {"interval_hours": 24}


def test_state_persists_across_instances(gate: SyncGate, clock: FakeClock) -> None:
    gate.update_settings(12)
    gate.mark_complete()
    reopened = SyncGate(gate.path, default_interval_hours=24, clock=clock)
    assert reopened.get_settings() == {"interval_hours": 12}
    assert not reopened.should_run()
    assert json.loads(gate.path.read_text()) == {"interval_hours": 12, "last_run": clock.now}


def test_no_temp_files_left_behind(gate: SyncGate) -> None:
    gate.update_settings(3)
    gate.mark_complete()
    assert [p.name for p in gate.path.parent.iterdir()] == ["sync_state.json"]


@pytest.mark.parametrize("content", ["{broken", '{"interval_hours": 0, "last_run": "yesterday"}', "[]"])
def test_bad_document_falls_back_to_defaults(tmp_path, clock: FakeClock, content: str) -> None:
    path = tmp_path / "sync_state.json"
    path.write_text(content)
    gate = SyncGate(path, default_interval_hours=24, clock=clock)
    assert gate.get_settings() == {"interval_hours": 24}
    assert gate.should_run()


def test_sees_writes_from_another_instance(gate: SyncGate, clock: FakeClock) -> None:
    gate.mark_complete()
    other = SyncGate(gate.path, default_interval_hours=24, clock=clock)
    other.update_settings(2)
    assert gate.get_settings() == {"interval_hours": 2}
    clock.now += 2 * HOUR
    assert gate.should_run()


def test_mark_complete_keeps_interval_set_elsewhere(gate: SyncGate, clock: FakeClock) -> None:
    assert gate.get_settings() == {"interval_hours": 24}
    SyncGate(gate.path, default_interval_hours=24, clock=clock).update_settings(2)
    gate.mark_complete()
    assert json.loads(gate.path.read_text()) == {"interval_hours": 2, "last_run": clock.now}


def test_failed_write_leaves_previous_state(gate: SyncGate, monkeypatch: pytest.MonkeyPatch) -> None:
    gate.update_settings(6)

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)
    with pytest.raises(OSError):
        gate.update_settings(12)
    monkeypatch.undo()

    assert gate.get_settings() == {"interval_hours": 6}
    assert [p.name for p in gate.path.parent.iterdir()] == ["sync_state.json"]
