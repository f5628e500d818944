"""Controllers for spark relay CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from spark_relay.config import EventBackend, ParticipantRole, Settings
from spark_relay.events import EventEmitter, EventStore, SQLiteEventStore, open_event_store
from spark_relay.events.base import retention_policy
from spark_relay.formatting import format_batch
from spark_relay.models import AccessLogQuery, Event, to_iso, utc_now
from spark_relay.orchestrator import Orchestrator
from spark_relay.pause import PauseCoordinator
from spark_relay.presence import PresenceRegistry


@dataclass(slots=True)
class SparkTarget:
    """Where the coordination state lives."""

    root_dir: Path | None = None
    backend: EventBackend | None = None


@dataclass(slots=True)
class EmitCommand:
    """CLI input for appending one event."""

    target: SparkTarget
    event_type: str
    feature: str | None
    route: str | None
    status: int | None
    data: str | None


@dataclass(slots=True)
class PauseCommand:
    """CLI input for pausing delivery."""

    target: SparkTarget
    reason: str
    holder: str | None


@dataclass(slots=True)
class RecentEventsCommand:
    """CLI input for listing recent events."""

    target: SparkTarget
    limit: int
    output_format: str = "table"


@dataclass(slots=True)
class AccessQueryCommand:
    """CLI input for access log queries."""

    target: SparkTarget
    feature: str | None
    status: int | None
    since_hours: int | None
    limit: int


@dataclass(slots=True)
class WatchCommand:
    """CLI input for the delivery loop."""

    target: SparkTarget
    once: bool
    role: ParticipantRole | None = None


class SparkCliController:
    """Coordinates emit, pause, inspection and watch CLI operations."""

    def emit(self, command: EmitCommand) -> list[str]:
        settings = _settings(command.target)
        raw: dict[str, object] = {}
        if command.data:
            parsed = json.loads(command.data)
            if not isinstance(parsed, dict):
                raise ValueError("--data must be a JSON object.")
            raw.update(parsed)
        raw["type"] = command.event_type
        if command.feature is not None:
            raw["feature"] = command.feature
        if command.route is not None:
            raw["route"] = command.route
        if command.status is not None:
            raw["status"] = command.status

        if not settings.enabled:
            return ["Spark is disabled; event dropped."]
        with _store(settings) as store:
            emitter = EventEmitter(store, environment=settings.environment)
            if not emitter.emit(raw):
                return [f"Failed to append {command.event_type} event."]
        return [f"Event appended: type={command.event_type} backend={settings.backend.value}"]

    def pause(self, command: PauseCommand) -> list[str]:
        settings = _settings(command.target)
        record = _pause_coordinator(settings).pause(command.reason, holder=command.holder)
        if record is None:
            return [f"Failed to write pause file {settings.pause_path}."]
        return [
            f"Paused by {record.holder or 'unknown'}: {record.reason} (since {to_iso(record.since)})",
        ]

    def resume(self, target: SparkTarget) -> list[str]:
        settings = _settings(target)
        if _pause_coordinator(settings).resume():
            return ["Resumed."]
        return ["Not paused."]

    def status(self, target: SparkTarget) -> list[str]:
        settings = _settings(target)
        record = _pause_coordinator(settings).read()
        registry = PresenceRegistry(settings.agents_dir)
        registry.scan()
        with _store(settings) as store:
            pending = store.pending_count()
            available = store.available

        lines = [
            f"Enabled: {'yes' if settings.enabled else 'no'}",
            f"Environment: {settings.environment}",
            f"Backend: {settings.backend.value}{'' if available else ' (unavailable)'}",
        ]
        if record is None:
            lines.append("Paused: no")
        else:
            lines.append(
                f"Paused: yes by {record.holder or 'unknown'}: {record.reason} "
                f"(since {to_iso(record.since)})",
            )
        lines.append(f"Pending events: {pending}")
        lines.append(
            f"Agents: {len(registry.records())} busy={'yes' if registry.is_busy() else 'no'}",
        )
        return lines

    def recent(self, command: RecentEventsCommand) -> list[str]:
        settings = _settings(command.target)
        with _store(settings) as store:
            events = store.recent(limit=command.limit)
        if command.output_format == "json":
            return [json.dumps([event.to_mapping() for event in events], ensure_ascii=False)]
        if not events:
            return ["No events."]
        return [_event_line(event) for event in events]

    def access_query(self, command: AccessQueryCommand) -> list[str]:
        settings = _settings(command.target)
        if settings.backend != EventBackend.SQLITE:
            return ["Access logs require the sqlite backend."]
        since = (
            utc_now() - timedelta(hours=command.since_hours)
            if command.since_hours is not None
            else None
        )
        with _store(settings) as store:
            if not isinstance(store, SQLiteEventStore):
                return ["Access logs require the sqlite backend."]
            entries = store.query_access(
                AccessLogQuery(
                    feature=command.feature,
                    status=command.status,
                    since=since,
                    limit=command.limit,
                ),
            )
        if not entries:
            return ["No access logs."]
        return [
            f"{to_iso(entry.timestamp)} {entry.method} {entry.path} status={entry.status} "
            f"duration_ms={entry.duration_ms:.1f} feature={entry.feature or '-'}"
            for entry in entries
        ]

    def agents(self, target: SparkTarget) -> list[str]:
        settings = _settings(target)
        registry = PresenceRegistry(settings.agents_dir)
        registry.scan()
        records = registry.records()
        if not records:
            return ["No agents."]
        return [
            f"{record.id} pid={record.pid} status={record.status.value} "
            f"started={to_iso(record.started_at)} last_activity={to_iso(record.last_activity)}"
            for record in records
        ]

    def watch(self, command: WatchCommand, *, sink: Callable[[str], None]) -> list[str]:
        """Deliver batches to ``sink`` as markdown; ``once`` runs only the catch-up pass."""

        settings = _settings(command.target)
        if command.role is not None:
            settings.role = command.role
        orchestrator = Orchestrator(
            settings,
            lambda batch: sink(format_batch(batch)),
            watch_filesystem=not command.once,
        )
        if command.once:
            orchestrator.start()
            orchestrator.stop()
        else:
            orchestrator.run_loop()
        return [
            "Watch summary: "
            f"batches={orchestrator.gate.delivered_batches} "
            f"events={orchestrator.gate.delivered_events} "
            f"buffered={len(orchestrator.gate.buffer)} state={orchestrator.gate.state.value}",
        ]

    def maintenance(self, target: SparkTarget) -> list[str]:
        settings = _settings(target)
        registry = PresenceRegistry(settings.agents_dir)
        registry.scan()
        with _store(settings) as store:
            result = store.retain(retention_policy(settings))
        return [
            "Retention: "
            f"events_deleted={result.events_deleted} "
            f"access_logs_deleted={result.access_logs_deleted} "
            f"temp_files_deleted={result.temp_files_deleted} "
            f"aggressive={'yes' if result.aggressive else 'no'}",
            f"Live agents: {len(registry.records())}",
        ]


def _settings(target: SparkTarget) -> Settings:
    settings = Settings.from_env(root_dir=target.root_dir)
    if target.backend is not None:
        settings.backend = target.backend
    settings.validate()
    return settings


def _pause_coordinator(settings: Settings) -> PauseCoordinator:
    return PauseCoordinator(
        settings.pause_path,
        stale_threshold_minutes=settings.pause.stale_threshold_minutes,
    )


@contextmanager
def _store(settings: Settings) -> Iterator[EventStore]:
    store = open_event_store(settings)
    try:
        yield store
    finally:
        store.close()


def _event_line(event: Event) -> str:
    parts = [to_iso(event.timestamp), event.type]
    if event.feature:
        parts.append(f"feature={event.feature}")
    if event.route:
        parts.append(f"route={event.route}")
    if event.status is not None:
        parts.append(f"status={event.status}")
    parts.append(f"consumed={'yes' if event.consumed else 'no'}")
    if event.truncated:
        parts.append("truncated=yes")
    parts.append(f"trace={event.trace_id}")
    return " ".join(parts)
