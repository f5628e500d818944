"""Runtime configuration for the spark relay coordination subsystem."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

_E = TypeVar("_E", bound=Enum)


class EventBackend(str, Enum):
    """Storage strategy used for the durable event queue."""

    DIRECTORY = "directory"
    SQLITE = "sqlite"


class ParticipantRole(str, Enum):
    """How this process takes part in coordination."""

    AGENT = "agent"
    SIDECAR = "sidecar"


@dataclass(slots=True)
class DebounceSettings:
    """Watcher debounce and staleness settings."""

    window_ms: int = 1_000
    stale_event_seconds: int = 300
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class PauseSettings:
    """Pause protocol settings."""

    stale_threshold_minutes: int = 30


@dataclass(slots=True)
class PresenceSettings:
    """Agent presence registry settings."""

    scan_interval_seconds: float = 5.0
    gate_refresh_seconds: float = 1.0


@dataclass(slots=True)
class RetentionSettings:
    """Event store retention settings."""

    max_age_days: int = 7
    max_size_mb: float = 100.0
    interval_seconds: float = 3_600.0
    aggressive_event_window_seconds: int = 3_600
    aggressive_access_window_seconds: int = 86_400


@dataclass(slots=True)
class Settings:
    """Coordination settings grouped by concern."""

    enabled: bool = True
    environment: str = "development"
    role: ParticipantRole = ParticipantRole.AGENT
    backend: EventBackend = EventBackend.DIRECTORY
    root_dir: Path = Path(".spark")
    sqlite_busy_timeout_ms: int = 5_000
    debounce: DebounceSettings = field(default_factory=DebounceSettings)
    pause: PauseSettings = field(default_factory=PauseSettings)
    presence: PresenceSettings = field(default_factory=PresenceSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)

    @property
    def events_dir(self) -> Path:
        return self.root_dir / "events"

    @property
    def pause_path(self) -> Path:
        return self.root_dir / "pause"

    @property
    def agents_dir(self) -> Path:
        return self.root_dir / "agents"

    @property
    def db_path(self) -> Path:
        return self.root_dir / "spark.db"

    @classmethod
    def from_env(cls, root_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults matching a local checkout."""

        return cls(
            enabled=_env_bool("SPARK_ENABLED", default=True),
            environment=(
                os.getenv("SPARK_ENV") or os.getenv("SPARK_ENVIRONMENT") or "development"
            ).strip(),
            role=_env_enum("SPARK_ROLE", ParticipantRole, ParticipantRole.AGENT),
            backend=_env_enum("SPARK_EVENT_BACKEND", EventBackend, EventBackend.DIRECTORY),
            root_dir=root_dir or Path(os.getenv("SPARK_ROOT_DIR", ".spark")),
            sqlite_busy_timeout_ms=int(os.getenv("SPARK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            debounce=DebounceSettings(
                window_ms=int(os.getenv("SPARK_DEBOUNCE_WINDOW_MS", "1000")),
                stale_event_seconds=int(os.getenv("SPARK_STALE_EVENT_SECONDS", "300")),
                poll_interval_seconds=float(os.getenv("SPARK_POLL_INTERVAL_SECONDS", "1.0")),
            ),
            pause=PauseSettings(
                stale_threshold_minutes=int(
                    os.getenv("SPARK_PAUSE_STALE_THRESHOLD_MINUTES", "30"),
                ),
            ),
            presence=PresenceSettings(
                scan_interval_seconds=float(
                    os.getenv("SPARK_PRESENCE_SCAN_INTERVAL_SECONDS", "5.0"),
                ),
                gate_refresh_seconds=float(
                    os.getenv("SPARK_GATE_REFRESH_SECONDS", "1.0"),
                ),
            ),
            retention=RetentionSettings(
                max_age_days=int(os.getenv("SPARK_RETENTION_MAX_AGE_DAYS", "7")),
                max_size_mb=float(os.getenv("SPARK_RETENTION_MAX_SIZE_MB", "100")),
                interval_seconds=float(
                    os.getenv("SPARK_RETENTION_INTERVAL_SECONDS", "3600"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error when a setting is out of range."""

        if self.debounce.window_ms < 0:
            raise ValueError("SPARK_DEBOUNCE_WINDOW_MS must be >= 0.")
        if self.debounce.stale_event_seconds <= 0:
            raise ValueError("SPARK_STALE_EVENT_SECONDS must be > 0.")
        if self.debounce.poll_interval_seconds <= 0:
            raise ValueError("SPARK_POLL_INTERVAL_SECONDS must be > 0.")
        if self.pause.stale_threshold_minutes <= 0:
            raise ValueError("SPARK_PAUSE_STALE_THRESHOLD_MINUTES must be > 0.")
        if self.presence.scan_interval_seconds <= 0:
            raise ValueError("SPARK_PRESENCE_SCAN_INTERVAL_SECONDS must be > 0.")
        if self.presence.gate_refresh_seconds <= 0:
            raise ValueError("SPARK_GATE_REFRESH_SECONDS must be > 0.")
        if self.retention.max_age_days < 0:
            raise ValueError("SPARK_RETENTION_MAX_AGE_DAYS must be >= 0.")
        if self.retention.max_size_mb <= 0:
            raise ValueError("SPARK_RETENTION_MAX_SIZE_MB must be > 0.")
        if self.retention.interval_seconds <= 0:
            raise ValueError("SPARK_RETENTION_INTERVAL_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SPARK_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_enum(name: str, enum_cls: type[_E], default: _E) -> _E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError as error:
        allowed = ", ".join(str(member.value) for member in enum_cls)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected one of: {allowed}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
