from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import allure
import pytest

from spark_relay.events import DirectoryEventStore, EventEmitter
from spark_relay.models import (
    PresenceChangeKind,
    PresenceRecord,
    PresenceStatus,
    to_iso,
)
from spark_relay.presence import AgentPresence, PresenceRegistry, process_alive
from spark_relay.storage.common import write_json_atomic

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Agent Presence"),
]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait(timeout=30)
    return process.pid


def _write_record(agents_dir, record_id: str, *, pid: int, status: str, clock) -> None:
    write_json_atomic(
        agents_dir / f"{record_id}.json",
        {
            "id": record_id,
            "pid": pid,
            "status": status,
            "startedAt": to_iso(clock.now),
            "lastActivity": to_iso(clock.now),
        },
    )


def test_process_alive_distinguishes_live_and_gone_processes() -> None:
    assert process_alive(os.getpid()) is True
    assert process_alive(_dead_pid()) is False
    assert process_alive(0) is False
    assert process_alive(-1) is False


def test_participant_lifecycle_writes_record_and_emits_events(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    presence = AgentPresence(
        tmp_path / "agents",
        emitter=EventEmitter(store, clock=clock),
        clock=clock,
    )

    presence.start()
    data = json.loads(presence.path.read_text(encoding="utf-8"))
    assert data["status"] == "idle"
    assert data["pid"] == os.getpid()
    assert data["id"] == presence.agent_id

    clock.advance(seconds=10)
    presence.mark_working()
    data = json.loads(presence.path.read_text(encoding="utf-8"))
    assert data["status"] == "working"
    assert data["lastActivity"] == to_iso(clock.now)
    assert data["startedAt"] != data["lastActivity"]

    presence.mark_idle()
    presence.stop()

    assert not presence.path.exists()
    events = store.drain_unconsumed()
    assert [event.type for event in events] == ["agent-start", "agent-stop"]
    assert events[0].payload["agentId"] == presence.agent_id
    assert events[0].payload["pid"] == os.getpid()


def test_transition_before_start_is_rejected(tmp_path) -> None:
    presence = AgentPresence(tmp_path / "agents")

    with pytest.raises(RuntimeError, match="not been started"):
        presence.mark_working()


def test_scan_prunes_records_of_dead_processes(tmp_path, clock) -> None:
    agents_dir = tmp_path / "agents"
    _write_record(agents_dir, "alive", pid=os.getpid(), status="idle", clock=clock)
    _write_record(agents_dir, "crashed", pid=_dead_pid(), status="working", clock=clock)
    (agents_dir / "garbage.json").write_text("{", encoding="utf-8")
    registry = PresenceRegistry(agents_dir)

    changes = registry.scan()

    assert [record.id for record in registry.records()] == ["alive"]
    assert [(change.kind, change.record.id) for change in changes] == [
        (PresenceChangeKind.JOINED, "alive"),
    ]
    assert not (agents_dir / "crashed.json").exists()
    assert not (agents_dir / "garbage.json").exists()
    assert registry.is_busy() is False


def test_busy_aggregate_and_diff_notifications(tmp_path, clock) -> None:
    agents_dir = tmp_path / "agents"
    alive = {"agent-a": True, "agent-b": True}
    pids = {"agent-a": 101, "agent-b": 102}
    seen: list[tuple[PresenceChangeKind, str]] = []
    registry = PresenceRegistry(
        agents_dir,
        liveness=lambda pid: alive["agent-a" if pid == pids["agent-a"] else "agent-b"],
        on_change=lambda change: seen.append((change.kind, change.record.id)),
    )
    _write_record(agents_dir, "agent-a", pid=101, status="working", clock=clock)
    _write_record(agents_dir, "agent-b", pid=102, status="idle", clock=clock)

    registry.scan()
    assert registry.is_busy() is True
    assert registry.is_busy(exclude_id="agent-a") is False
    assert sorted(seen) == [
        (PresenceChangeKind.JOINED, "agent-a"),
        (PresenceChangeKind.JOINED, "agent-b"),
    ]

    seen.clear()
    _write_record(agents_dir, "agent-b", pid=102, status="working", clock=clock)
    alive["agent-a"] = False
    changes = registry.scan()

    assert seen == [
        (PresenceChangeKind.STATUS_CHANGED, "agent-b"),
        (PresenceChangeKind.DEPARTED, "agent-a"),
    ]
    status_change = changes[0]
    assert status_change.previous is not None
    assert status_change.previous.status == PresenceStatus.IDLE
    assert status_change.record.status == PresenceStatus.WORKING
    assert registry.is_busy(exclude_id="agent-a") is True


def test_presence_record_round_trips_wire_shape(clock) -> None:
    record = PresenceRecord(
        id="agent-1",
        pid=42,
        status=PresenceStatus.WORKING,
        started_at=clock.now,
        last_activity=clock.now,
    )

    assert PresenceRecord.from_mapping(record.to_mapping()) == record
    assert set(record.to_mapping()) == {"id", "pid", "status", "startedAt", "lastActivity"}


def test_scan_survives_records_it_cannot_remove(tmp_path, clock, monkeypatch) -> None:
    agents_dir = tmp_path / "agents"
    _write_record(agents_dir, "alive", pid=101, status="working", clock=clock)
    _write_record(agents_dir, "crashed", pid=102, status="working", clock=clock)
    (agents_dir / "garbage.json").write_text("{", encoding="utf-8")
    registry = PresenceRegistry(agents_dir, liveness=lambda pid: pid == 101)

    def _deny(self, missing_ok: bool = False) -> None:
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "unlink", _deny)

    changes = registry.scan()

    assert [(change.kind, change.record.id) for change in changes] == [
        (PresenceChangeKind.JOINED, "alive"),
    ]
    assert registry.is_busy() is True
    assert (agents_dir / "crashed.json").exists()
