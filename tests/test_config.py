from __future__ import annotations

from pathlib import Path

import allure
import pytest

from spark_relay.config import (
    DebounceSettings,
    EventBackend,
    ParticipantRole,
    RetentionSettings,
    Settings,
)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Configuration"),
]


def test_defaults_match_local_checkout_layout() -> None:
    settings = Settings.from_env()

    assert settings.enabled is True
    assert settings.environment == "development"
    assert settings.role == ParticipantRole.AGENT
    assert settings.backend == EventBackend.DIRECTORY
    assert settings.debounce.window_ms == 1000
    assert settings.debounce.stale_event_seconds == 300
    assert settings.pause.stale_threshold_minutes == 30
    assert settings.events_dir == Path(".spark") / "events"
    assert settings.pause_path == Path(".spark") / "pause"
    assert settings.agents_dir == Path(".spark") / "agents"
    assert settings.db_path == Path(".spark") / "spark.db"
    settings.validate()


def test_from_env_reads_spark_variables(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("SPARK_ENABLED", "no")
    monkeypatch.setenv("SPARK_ENV", "production")
    monkeypatch.setenv("SPARK_ROLE", "Sidecar")
    monkeypatch.setenv("SPARK_EVENT_BACKEND", "sqlite")
    monkeypatch.setenv("SPARK_ROOT_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("SPARK_DEBOUNCE_WINDOW_MS", "250")
    monkeypatch.setenv("SPARK_PAUSE_STALE_THRESHOLD_MINUTES", "5")
    monkeypatch.setenv("SPARK_RETENTION_MAX_SIZE_MB", "12.5")

    settings = Settings.from_env()

    assert settings.enabled is False
    assert settings.environment == "production"
    assert settings.role == ParticipantRole.SIDECAR
    assert settings.backend == EventBackend.SQLITE
    assert settings.root_dir == tmp_path / "state"
    assert settings.db_path == tmp_path / "state" / "spark.db"
    assert settings.debounce.window_ms == 250
    assert settings.pause.stale_threshold_minutes == 5
    assert settings.retention.max_size_mb == 12.5


def test_explicit_root_dir_overrides_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("SPARK_ROOT_DIR", str(tmp_path / "ignored"))

    settings = Settings.from_env(root_dir=tmp_path / "chosen")

    assert settings.root_dir == tmp_path / "chosen"


def test_invalid_backend_lists_allowed_values(monkeypatch) -> None:
    monkeypatch.setenv("SPARK_EVENT_BACKEND", "redis")

    with pytest.raises(ValueError, match="SPARK_EVENT_BACKEND.*directory, sqlite"):
        Settings.from_env()


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("SPARK_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for SPARK_ENABLED"):
        Settings.from_env()


def test_validate_rejects_negative_debounce_window() -> None:
    settings = Settings(debounce=DebounceSettings(window_ms=-1))

    with pytest.raises(ValueError, match="SPARK_DEBOUNCE_WINDOW_MS"):
        settings.validate()


def test_validate_rejects_non_positive_size_ceiling() -> None:
    settings = Settings(retention=RetentionSettings(max_size_mb=0))

    with pytest.raises(ValueError, match="SPARK_RETENTION_MAX_SIZE_MB"):
        settings.validate()
