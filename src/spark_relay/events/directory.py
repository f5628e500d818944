"""Directory-of-records event store: one JSON file per event."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from spark_relay.models import Event, RetentionPolicy, RetentionResult, utc_now
from spark_relay.storage.common import write_json_atomic

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
TEMP_FILE_GRACE_SECONDS = 60
_UNSAFE_TYPE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


class DirectoryEventStore:
    """Queue persistence over a directory, using the filesystem for exclusion.

    Records are named ``<epochMillis>-<type>-<shortId>.json`` and become
    visible only through an atomic rename. Claiming a record means deleting
    it: the reader whose ``unlink`` succeeds is its sole consumer.
    """

    def __init__(
        self,
        events_dir: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.events_dir = events_dir
        self._clock = clock
        self._last_millis = 0

    @property
    def available(self) -> bool:
        return True

    def append(self, event: Event) -> bool:
        capped = event.capped()
        filename = self._next_filename(capped.type)
        try:
            write_json_atomic(self.events_dir / filename, capped.to_mapping())
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Failed to write event record %s: %s", filename, error)
            return False
        return True

    def drain_unconsumed(self) -> list[Event]:
        claimed: list[Event] = []
        consumed_at = self._clock()
        for path in self._record_paths():
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.debug("Skipping unreadable event record %s: %s", path.name, error)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.debug("Could not claim event record %s: %s", path.name, error)
                continue

            event = _parse_record(raw)
            if event is None:
                logger.debug("Discarded malformed event record %s", path.name)
                continue
            event.consumed = True
            event.consumed_at = consumed_at
            claimed.append(event)
        return claimed

    def recent(self, limit: int = 50) -> list[Event]:
        events: list[Event] = []
        for path in reversed(self._record_paths()):
            if len(events) >= limit:
                break
            try:
                event = _parse_record(path.read_text(encoding="utf-8"))
            except OSError:
                continue
            if event is not None:
                events.append(event)
        return events

    def pending_count(self) -> int:
        return len(self._record_paths())

    def retain(self, policy: RetentionPolicy) -> RetentionResult:
        result = RetentionResult()
        now = self._clock()
        age_cutoff = now - timedelta(days=policy.max_age_days)
        temp_cutoff = now - timedelta(seconds=TEMP_FILE_GRACE_SECONDS)

        for path in self._temp_paths():
            modified_at = _mtime(path)
            if modified_at is not None and modified_at < temp_cutoff and _unlink_quietly(path):
                result.temp_files_deleted += 1

        for path in self._record_paths():
            created_at = _record_created_at(path)
            if created_at is not None and created_at < age_cutoff and _unlink_quietly(path):
                result.events_deleted += 1

        if self._size_bytes() > policy.max_size_mb * 1024 * 1024:
            result.aggressive = True
            aggressive_cutoff = now - timedelta(seconds=policy.aggressive_event_window_seconds)
            for path in self._record_paths():
                created_at = _record_created_at(path)
                if (
                    created_at is not None
                    and created_at < aggressive_cutoff
                    and _unlink_quietly(path)
                ):
                    result.events_deleted += 1
            logger.warning(
                "Event directory %s exceeded %.1f MB; pruned records older than %ss",
                self.events_dir,
                policy.max_size_mb,
                policy.aggressive_event_window_seconds,
            )
        return result

    def close(self) -> None:
        return

    def _next_filename(self, event_type: str) -> str:
        millis = max(int(self._clock().timestamp() * 1000), self._last_millis + 1)
        self._last_millis = millis
        safe_type = _UNSAFE_TYPE_CHARS.sub("_", event_type) or "event"
        return f"{millis}-{safe_type}-{uuid4().hex[:8]}{RECORD_SUFFIX}"

    def _record_paths(self) -> list[Path]:
        try:
            entries = list(self.events_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as error:
            logger.debug("Cannot list event directory %s: %s", self.events_dir, error)
            return []
        records = [
            entry
            for entry in entries
            if entry.name.endswith(RECORD_SUFFIX) and not entry.name.startswith(".")
        ]
        records.sort(key=_record_sort_key)
        return records

    def _temp_paths(self) -> list[Path]:
        try:
            return [
                entry
                for entry in self.events_dir.iterdir()
                if entry.name.startswith(".") and entry.name.endswith(TEMP_SUFFIX)
            ]
        except OSError:
            return []

    def _size_bytes(self) -> int:
        total = 0
        for path in self._record_paths():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total


def _parse_record(raw: str) -> Event | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return Event.from_mapping(data)
    except (KeyError, TypeError, ValueError):
        return None


def _record_sort_key(path: Path) -> tuple[int, str]:
    prefix = path.name.split("-", 1)[0]
    return (int(prefix) if prefix.isdigit() else 0, path.name)


def _record_created_at(path: Path) -> datetime | None:
    prefix = path.name.split("-", 1)[0]
    if prefix.isdigit():
        return datetime.fromtimestamp(int(prefix) / 1000, tz=UTC)
    return _mtime(path)


def _mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
    except OSError:
        return None


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except OSError:
        return False
    return True
