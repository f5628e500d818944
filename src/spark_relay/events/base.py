"""Event store contract shared by every queue backend."""

from __future__ import annotations

from typing import Protocol

from spark_relay.config import EventBackend, Settings
from spark_relay.models import Event, RetentionPolicy, RetentionResult


class EventStore(Protocol):
    """Durable append-only queue where each record is claimed at most once.

    Implementations never raise from these operations: failures degrade to
    no-ops or empty results and are logged.
    """

    @property
    def available(self) -> bool:
        """False once the store failed to open even after recreation."""
        ...

    def append(self, event: Event) -> bool:
        """Persist one event. Returns False when the write was dropped."""
        ...

    def drain_unconsumed(self) -> list[Event]:
        """Atomically claim every unconsumed event, oldest first."""
        ...

    def recent(self, limit: int = 50) -> list[Event]:
        """Newest events first, consumed or not."""
        ...

    def pending_count(self) -> int:
        """Number of events not yet claimed."""
        ...

    def retain(self, policy: RetentionPolicy) -> RetentionResult:
        """Prune old records by age and on-disk size."""
        ...

    def close(self) -> None:
        """Release underlying resources."""
        ...


def open_event_store(settings: Settings) -> EventStore:
    """Create the store strategy selected by ``settings.backend``."""

    if settings.backend == EventBackend.SQLITE:
        from spark_relay.events.sqlite import SQLiteEventStore

        return SQLiteEventStore(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )

    from spark_relay.events.directory import DirectoryEventStore

    return DirectoryEventStore(settings.events_dir)


def retention_policy(settings: Settings) -> RetentionPolicy:
    return RetentionPolicy(
        max_age_days=settings.retention.max_age_days,
        max_size_mb=settings.retention.max_size_mb,
        aggressive_event_window_seconds=settings.retention.aggressive_event_window_seconds,
        aggressive_access_window_seconds=settings.retention.aggressive_access_window_seconds,
    )
