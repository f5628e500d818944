"""Common helpers for SQLite engines and atomic file writes."""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

SQLITE_COMPANION_SUFFIXES = ("-wal", "-shm", "-journal")


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def probe_sqlite_integrity(db_path: Path) -> bool:
    """Return True when the file opens as SQLite and passes ``quick_check``."""

    if not db_path.exists():
        return True
    try:
        connection = sqlite3.connect(db_path)
    except sqlite3.Error:
        return False
    try:
        row = connection.execute("PRAGMA quick_check").fetchone()
    except sqlite3.DatabaseError:
        return False
    finally:
        connection.close()
    return row is not None and str(row[0]).lower() == "ok"


def remove_sqlite_files(db_path: Path) -> None:
    """Delete a database file together with its WAL/SHM companions."""

    for path in (db_path, *(Path(f"{db_path}{suffix}") for suffix in SQLITE_COMPANION_SUFFIXES)):
        path.unlink(missing_ok=True)


def sqlite_size_bytes(db_path: Path) -> int:
    total = 0
    for path in (db_path, Path(f"{db_path}-wal")):
        try:
            total += path.stat().st_size
        except FileNotFoundError:
            continue
    return total


def to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a sibling temp file, then rename it over ``path``.

    Readers never observe a half-written file. The temp file is removed when
    the write fails before the rename.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
