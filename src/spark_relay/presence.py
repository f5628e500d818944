"""Participant presence records and the registry that scans them."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import psutil

from spark_relay.events.producer import EventEmitter
from spark_relay.models import (
    EventType,
    PresenceChange,
    PresenceChangeKind,
    PresenceRecord,
    PresenceStatus,
    utc_now,
)
from spark_relay.storage.common import write_json_atomic

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


def process_alive(pid: int) -> bool:
    """Non-blocking liveness probe.

    A process that exists but cannot be inspected counts as alive; a zombie
    counts as dead.
    """

    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.AccessDenied:
        return True
    except psutil.NoSuchProcess:
        return False


class AgentPresence:
    """Presence record owned by the current process."""

    def __init__(
        self,
        agents_dir: Path,
        *,
        emitter: EventEmitter | None = None,
        agent_id: str | None = None,
        pid: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.agents_dir = agents_dir
        self.emitter = emitter
        self.agent_id = agent_id or str(uuid4())
        self.pid = pid if pid is not None else os.getpid()
        self._clock = clock
        self.record: PresenceRecord | None = None

    @property
    def path(self) -> Path:
        return self.agents_dir / f"{self.agent_id}{RECORD_SUFFIX}"

    def start(self) -> PresenceRecord:
        now = self._clock()
        record = PresenceRecord(
            id=self.agent_id,
            pid=self.pid,
            status=PresenceStatus.IDLE,
            started_at=now,
            last_activity=now,
        )
        self._write(record)
        self._emit(EventType.AGENT_START)
        return record

    def mark_working(self) -> None:
        self._transition(PresenceStatus.WORKING)

    def mark_idle(self) -> None:
        self._transition(PresenceStatus.IDLE)

    def stop(self) -> None:
        if self.record is None:
            return
        self._emit(EventType.AGENT_STOP)
        try:
            self.path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Failed to remove presence record %s: %s", self.path, error)
        self.record = None

    def _transition(self, status: PresenceStatus) -> None:
        if self.record is None:
            raise RuntimeError("Presence has not been started.")
        self._write(replace(self.record, status=status, last_activity=self._clock()))

    def _write(self, record: PresenceRecord) -> None:
        self.record = record
        try:
            write_json_atomic(self.path, record.to_mapping())
        except OSError as error:
            logger.warning("Failed to write presence record %s: %s", self.path, error)

    def _emit(self, event_type: EventType) -> None:
        if self.emitter is None:
            return
        self.emitter.emit(
            {
                "type": event_type.value,
                "agentId": self.agent_id,
                "pid": self.pid,
                "timestamp": self._clock(),
            },
        )


class PresenceRegistry:
    """Scanner over every participant's presence record.

    Each ``scan`` re-reads the directory, prunes records whose process is
    gone, and diffs the survivors against the previous snapshot.
    """

    def __init__(
        self,
        agents_dir: Path,
        *,
        liveness: Callable[[int], bool] = process_alive,
        on_change: Callable[[PresenceChange], None] | None = None,
    ) -> None:
        self.agents_dir = agents_dir
        self._liveness = liveness
        self._on_change = on_change
        self._snapshot: dict[str, PresenceRecord] = {}

    def records(self) -> list[PresenceRecord]:
        """Live records as of the last scan."""

        return sorted(self._snapshot.values(), key=lambda record: record.started_at)

    def scan(self) -> list[PresenceChange]:
        current: dict[str, PresenceRecord] = {}
        for path in self._record_paths():
            record = self._read_record(path)
            if record is None:
                continue
            if not self._liveness(record.pid):
                logger.info("Pruning presence record %s: pid %s is gone", record.id, record.pid)
                _unlink_quietly(path)
                continue
            current[record.id] = record

        changes = _diff(self._snapshot, current)
        self._snapshot = current
        if self._on_change is not None:
            for change in changes:
                self._on_change(change)
        return changes

    def is_busy(self, *, exclude_id: str | None = None) -> bool:
        return any(
            record.status == PresenceStatus.WORKING
            for record in self._snapshot.values()
            if record.id != exclude_id
        )

    def _record_paths(self) -> list[Path]:
        try:
            return sorted(
                entry
                for entry in self.agents_dir.iterdir()
                if entry.name.endswith(RECORD_SUFFIX) and not entry.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        except OSError as error:
            logger.debug("Cannot list presence directory %s: %s", self.agents_dir, error)
            return []

    def _read_record(self, path: Path) -> PresenceRecord | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.debug("Skipping unreadable presence record %s: %s", path.name, error)
            return None
        except json.JSONDecodeError:
            logger.debug("Removing unparseable presence record %s", path.name)
            _unlink_quietly(path)
            return None
        try:
            return PresenceRecord.from_mapping(data)
        except (KeyError, TypeError, ValueError):
            logger.debug("Removing malformed presence record %s", path.name)
            _unlink_quietly(path)
            return None


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as error:
        logger.debug("Cannot remove presence record %s: %s", path.name, error)


def _diff(
    previous: dict[str, PresenceRecord],
    current: dict[str, PresenceRecord],
) -> list[PresenceChange]:
    changes: list[PresenceChange] = []
    for record_id, record in current.items():
        before = previous.get(record_id)
        if before is None:
            changes.append(PresenceChange(kind=PresenceChangeKind.JOINED, record=record))
        elif before.status != record.status:
            changes.append(
                PresenceChange(
                    kind=PresenceChangeKind.STATUS_CHANGED,
                    record=record,
                    previous=before,
                ),
            )
    for record_id, record in previous.items():
        if record_id not in current:
            changes.append(PresenceChange(kind=PresenceChangeKind.DEPARTED, record=record))
    return changes
