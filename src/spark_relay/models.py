"""Domain models for incident events, access logs, pause and presence records."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

MAX_DATA_BYTES = 64 * 1024
MAX_USER_AGENT_BYTES = 1024

ENVELOPE_KEYS = frozenset(
    {
        "type",
        "traceId",
        "timestamp",
        "environment",
        "feature",
        "route",
        "status",
        "payload",
        "truncated",
        "consumed",
        "consumedAt",
    },
)


class EventType(str, Enum):
    """Event types produced by the application and by agent lifecycle hooks."""

    SERVER_ERROR = "server-error"
    UNHANDLED_ERROR = "unhandled-error"
    PROCESS_ERROR = "process-error"
    RATE_LIMIT = "rate-limit"
    AGENT_START = "agent-start"
    AGENT_STOP = "agent-stop"


LIFECYCLE_PREFIX = "agent-"


class PresenceStatus(str, Enum):
    """Busy/idle state advertised by a participant."""

    IDLE = "idle"
    WORKING = "working"


class PresenceChangeKind(str, Enum):
    """Classification of a registry diff entry."""

    JOINED = "joined"
    DEPARTED = "departed"
    STATUS_CHANGED = "status-changed"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with a Z suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def truncate_bytes(value: str | None, max_bytes: int) -> str | None:
    """Hard-truncate text to at most ``max_bytes`` UTF-8 bytes."""

    if value is None:
        return None
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def is_lifecycle_type(event_type: str) -> bool:
    return event_type.startswith(LIFECYCLE_PREFIX)


@dataclass(slots=True)
class Event:
    """One runtime incident destined for exactly one consumer.

    ``payload`` is a mapping for regular events. When the serialized payload
    exceeded ``MAX_DATA_BYTES`` it holds the raw truncated JSON text instead.
    """

    type: str
    trace_id: str
    timestamp: datetime
    environment: str | None = None
    feature: str | None = None
    route: str | None = None
    status: int | None = None
    payload: dict[str, Any] | str = field(default_factory=dict)
    consumed: bool = False
    consumed_at: datetime | None = None

    @property
    def truncated(self) -> bool:
        return isinstance(self.payload, str)

    @property
    def is_lifecycle(self) -> bool:
        return is_lifecycle_type(self.type)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        default_environment: str | None = None,
        now: datetime | None = None,
    ) -> Event:
        """Build an event from the flat wire shape used by producers.

        Every key outside the envelope ends up in ``payload``. A nested
        ``payload`` mapping is merged first so already-normalized records
        round-trip unchanged; any other ``payload`` value is kept under that
        key unless the record is flagged ``truncated``.
        """

        event_type = data.get("type")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("Event type is required.")

        raw_payload = data.get("payload")
        payload: dict[str, Any] | str
        if isinstance(raw_payload, str) and data.get("truncated"):
            payload = raw_payload
        else:
            fields: dict[str, Any]
            if isinstance(raw_payload, Mapping):
                fields = dict(raw_payload)
            elif raw_payload is None:
                fields = {}
            else:
                # A producer field that happens to be named "payload" stays data.
                fields = {"payload": raw_payload}
            for key, value in data.items():
                if key not in ENVELOPE_KEYS:
                    fields[key] = value
            payload = fields

        raw_timestamp = data.get("timestamp")
        if isinstance(raw_timestamp, datetime):
            timestamp = raw_timestamp if raw_timestamp.tzinfo else raw_timestamp.replace(tzinfo=UTC)
        elif isinstance(raw_timestamp, str) and raw_timestamp.strip():
            timestamp = from_iso(raw_timestamp)
        else:
            timestamp = now or utc_now()

        raw_status = data.get("status")
        raw_consumed_at = data.get("consumedAt")
        return cls(
            type=event_type.strip(),
            trace_id=str(data.get("traceId") or uuid4()),
            timestamp=timestamp,
            environment=data.get("environment") or default_environment,
            feature=data.get("feature"),
            route=data.get("route"),
            status=int(raw_status) if raw_status is not None else None,
            payload=payload,
            consumed=bool(data.get("consumed", False)),
            consumed_at=from_iso(raw_consumed_at) if isinstance(raw_consumed_at, str) else None,
        )

    def to_mapping(self) -> dict[str, Any]:
        """Render the record in its JSON wire shape."""

        data: dict[str, Any] = {
            "type": self.type,
            "traceId": self.trace_id,
            "timestamp": to_iso(self.timestamp),
        }
        if self.environment is not None:
            data["environment"] = self.environment
        if self.feature is not None:
            data["feature"] = self.feature
        if self.route is not None:
            data["route"] = self.route
        if self.status is not None:
            data["status"] = self.status
        data["payload"] = self.payload
        if self.truncated:
            data["truncated"] = True
        if self.consumed:
            data["consumed"] = True
        if self.consumed_at is not None:
            data["consumedAt"] = to_iso(self.consumed_at)
        return data

    def capped(self) -> Event:
        """Return a copy whose payload fits ``MAX_DATA_BYTES``."""

        if isinstance(self.payload, str):
            text = truncate_bytes(self.payload, MAX_DATA_BYTES) or ""
            return replace(self, payload=text)
        serialized = serialize_payload(self.payload)
        if len(serialized.encode("utf-8")) <= MAX_DATA_BYTES:
            return self
        return replace(self, payload=truncate_bytes(serialized, MAX_DATA_BYTES) or "")


def serialize_payload(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


@dataclass(slots=True)
class AccessLog:
    """A single HTTP access log entry."""

    timestamp: datetime
    method: str
    path: str
    status: int
    duration_ms: float
    ip: str | None = None
    feature: str | None = None
    request_id: str | None = None
    input: str | None = None
    error: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class AccessLogQuery:
    """Filters for querying access logs."""

    feature: str | None = None
    status: int | None = None
    since: datetime | None = None
    limit: int = 100


@dataclass(slots=True)
class RetentionPolicy:
    """Age and size limits applied by ``EventStore.retain``."""

    max_age_days: int = 7
    max_size_mb: float = 100.0
    aggressive_event_window_seconds: int = 3_600
    aggressive_access_window_seconds: int = 86_400


@dataclass(slots=True)
class RetentionResult:
    """Outcome of one retention pass."""

    events_deleted: int = 0
    access_logs_deleted: int = 0
    temp_files_deleted: int = 0
    aggressive: bool = False
    compacted: bool = False


@dataclass(slots=True)
class PauseRecord:
    """Advisory single-slot pause signal."""

    holder: str | None
    since: datetime
    reason: str

    def to_mapping(self) -> dict[str, Any]:
        return {"by": self.holder, "since": to_iso(self.since), "reason": self.reason}


@dataclass(slots=True)
class PresenceRecord:
    """Heartbeat of one participant process."""

    id: str
    pid: int
    status: PresenceStatus
    started_at: datetime
    last_activity: datetime

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PresenceRecord:
        return cls(
            id=str(data["id"]),
            pid=int(data["pid"]),
            status=PresenceStatus(data["status"]),
            started_at=from_iso(str(data["startedAt"])),
            last_activity=from_iso(str(data["lastActivity"])),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "status": self.status.value,
            "startedAt": to_iso(self.started_at),
            "lastActivity": to_iso(self.last_activity),
        }


@dataclass(slots=True)
class PresenceChange:
    """One classified difference between two registry snapshots."""

    kind: PresenceChangeKind
    record: PresenceRecord
    previous: PresenceRecord | None = None
