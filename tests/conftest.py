"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest

from spark_relay.config import Settings


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic seconds source for loop tests."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture(autouse=True)
def _clean_spark_env(monkeypatch):
    """Keep developer SPARK_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("SPARK_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture()
def spark_settings(tmp_path) -> Settings:
    return Settings(root_dir=tmp_path / ".spark")
