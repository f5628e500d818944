from __future__ import annotations

import json
import os
import threading
from datetime import timedelta

import allure

from spark_relay.events import DirectoryEventStore, EventEmitter
from spark_relay.models import MAX_DATA_BYTES, Event, RetentionPolicy

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Directory Event Store"),
]


def _emitter(store: DirectoryEventStore, clock) -> EventEmitter:
    return EventEmitter(store, environment="test", clock=clock)


def test_emit_then_drain_returns_events_in_append_order_once(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    emitter = _emitter(store, clock)

    for index in range(3):
        assert emitter.emit(
            {
                "type": "server-error",
                "feature": "checkout",
                "route": "/api/checkout",
                "status": 500,
                "error": {"message": f"boom {index}"},
            },
        )

    assert store.pending_count() == 3
    drained = store.drain_unconsumed()

    assert [event.payload["error"]["message"] for event in drained] == [
        "boom 0",
        "boom 1",
        "boom 2",
    ]
    assert all(event.consumed for event in drained)
    assert all(event.consumed_at == clock.now for event in drained)
    assert drained[0].environment == "test"
    assert drained[0].status == 500
    assert list((tmp_path / "events").iterdir()) == []
    assert store.drain_unconsumed() == []


def test_record_names_sort_in_append_order_within_one_millisecond(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)

    for event_type in ("b-type", "a-type", "c/type"):
        store.append(Event(type=event_type, trace_id=event_type, timestamp=clock.now))

    names = sorted(path.name for path in (tmp_path / "events").iterdir())
    prefixes = [int(name.split("-", 1)[0]) for name in names]
    assert prefixes == sorted(set(prefixes))
    assert [event.trace_id for event in store.drain_unconsumed()] == ["b-type", "a-type", "c/type"]
    assert all(name.endswith(".json") for name in names)
    assert not any("/" in name for name in names)


def test_oversized_payload_is_truncated_to_cap(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    emitter = _emitter(store, clock)

    assert emitter.emit({"type": "unhandled-error", "blob": "x" * 70_000})

    [event] = store.drain_unconsumed()
    assert event.truncated is True
    assert isinstance(event.payload, str)
    assert len(event.payload.encode("utf-8")) == MAX_DATA_BYTES


def test_malformed_records_are_discarded(tmp_path, clock) -> None:
    events_dir = tmp_path / "events"
    store = DirectoryEventStore(events_dir, clock=clock)
    store.append(Event(type="server-error", trace_id="good", timestamp=clock.now))
    (events_dir / "1-server-error-garbage.json").write_text("{not json", encoding="utf-8")
    (events_dir / "2-missing-type.json").write_text(json.dumps({"traceId": "x"}), encoding="utf-8")

    drained = store.drain_unconsumed()

    assert [event.trace_id for event in drained] == ["good"]
    assert list(events_dir.iterdir()) == []


def test_in_progress_temp_files_are_invisible(tmp_path, clock) -> None:
    events_dir = tmp_path / "events"
    events_dir.mkdir()
    (events_dir / ".1-server-error-abc.json.1234abcd.tmp").write_text("{}", encoding="utf-8")
    store = DirectoryEventStore(events_dir, clock=clock)

    assert store.pending_count() == 0
    assert store.drain_unconsumed() == []


def test_concurrent_readers_claim_each_record_exactly_once(tmp_path, clock) -> None:
    events_dir = tmp_path / "events"
    writer = DirectoryEventStore(events_dir, clock=clock)
    for index in range(200):
        writer.append(Event(type="server-error", trace_id=f"trace-{index}", timestamp=clock.now))

    start_event = threading.Event()
    results: list[list[str]] = []
    lock = threading.Lock()

    def _drain() -> None:
        reader = DirectoryEventStore(events_dir, clock=clock)
        start_event.wait(timeout=2)
        claimed = [event.trace_id for event in reader.drain_unconsumed()]
        with lock:
            results.append(claimed)

    threads = [threading.Thread(target=_drain) for _ in range(4)]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=10)

    claimed_ids = [trace_id for batch in results for trace_id in batch]
    assert len(claimed_ids) == 200
    assert set(claimed_ids) == {f"trace-{index}" for index in range(200)}


def test_recent_lists_newest_first_without_consuming(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    for index in range(5):
        store.append(Event(type="rate-limit", trace_id=f"t{index}", timestamp=clock.now))

    recent = store.recent(limit=3)

    assert [event.trace_id for event in recent] == ["t4", "t3", "t2"]
    assert store.pending_count() == 5


def test_retention_removes_old_records_and_abandoned_temp_files(tmp_path, clock) -> None:
    events_dir = tmp_path / "events"
    store = DirectoryEventStore(events_dir, clock=clock)
    clock.advance(days=-10)
    store.append(Event(type="server-error", trace_id="old", timestamp=clock.now))
    clock.advance(days=10)
    store.append(Event(type="server-error", trace_id="new", timestamp=clock.now))
    temp_path = events_dir / ".9-server-error-dead.json.deadbeef.tmp"
    temp_path.write_text("{", encoding="utf-8")
    old_mtime = (clock.now - timedelta(minutes=5)).timestamp()
    os.utime(temp_path, (old_mtime, old_mtime))

    result = store.retain(RetentionPolicy(max_age_days=7))

    assert result.events_deleted == 1
    assert result.temp_files_deleted == 1
    assert result.aggressive is False
    assert [event.trace_id for event in store.drain_unconsumed()] == ["new"]


def test_retention_prunes_aggressively_above_size_ceiling(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    clock.advance(hours=-2)
    store.append(Event(type="server-error", trace_id="older", timestamp=clock.now))
    clock.advance(hours=2)
    store.append(Event(type="server-error", trace_id="fresh", timestamp=clock.now))

    result = store.retain(RetentionPolicy(max_age_days=7, max_size_mb=0.000001))

    assert result.aggressive is True
    assert result.events_deleted == 1
    assert [event.trace_id for event in store.drain_unconsumed()] == ["fresh"]


def test_disabled_emitter_writes_nothing(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    emitter = EventEmitter(store, enabled=False)

    assert emitter.emit({"type": "server-error"}) is False
    assert store.pending_count() == 0


def test_emitter_drops_events_without_type(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)

    assert _emitter(store, clock).emit({"error": "no type"}) is False
    assert store.pending_count() == 0


def test_append_reports_failure_when_directory_is_unwritable(tmp_path, clock) -> None:
    blocker = tmp_path / "events"
    blocker.write_text("not a directory", encoding="utf-8")
    store = DirectoryEventStore(blocker, clock=clock)

    assert store.append(Event(type="server-error", trace_id="t", timestamp=clock.now)) is False
    assert store.drain_unconsumed() == []


def test_non_json_payload_values_are_stored_as_text(tmp_path, clock) -> None:
    store = DirectoryEventStore(tmp_path / "events", clock=clock)
    when = clock.now - timedelta(minutes=1)

    assert _emitter(store, clock).emit({"type": "server-error", "when": when, "path": tmp_path})

    [event] = store.drain_unconsumed()
    assert event.payload == {"when": str(when), "path": str(tmp_path)}
