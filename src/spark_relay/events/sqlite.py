"""Transactional-table event store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from alembic.util.exc import CommandError
from sqlalchemy import delete, func, text
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from spark_relay.models import (
    MAX_DATA_BYTES,
    MAX_USER_AGENT_BYTES,
    AccessLog,
    AccessLogQuery,
    Event,
    RetentionPolicy,
    RetentionResult,
    serialize_payload,
    truncate_bytes,
    utc_now,
)
from spark_relay.storage.alembic_runner import upgrade_head
from spark_relay.storage.common import (
    build_sqlite_engine,
    probe_sqlite_integrity,
    remove_sqlite_files,
    sqlite_size_bytes,
    to_db_datetime,
    to_utc_aware_datetime,
)
from spark_relay.storage.sqlmodel_models import AccessLogRecord, EventRecord

logger = logging.getLogger(__name__)

_OPEN_ERRORS = (SQLAlchemyError, sqlite3.Error, CommandError, OSError)
_TRUNCATION_SLACK_BYTES = 3


class SQLiteEventStore:
    """Queue persistence facade over the ``events`` and ``access_logs`` tables.

    Claiming is a single ``UPDATE ... RETURNING`` statement, so two pollers
    racing the same database can never both receive a row. A database that
    cannot be opened is deleted and recreated; if even that fails the store
    stays unavailable and every operation becomes a no-op.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self.engine: Engine | None = None
        self._open()

    @property
    def available(self) -> bool:
        return self.engine is not None

    def close(self) -> None:
        """Close underlying DB resources."""

        self._dispose()

    def append(self, event: Event) -> bool:
        if self.engine is None:
            return False
        capped = event.capped()
        row = EventRecord(
            type=capped.type,
            trace_id=capped.trace_id,
            timestamp=to_db_datetime(capped.timestamp),
            environment=capped.environment,
            feature=capped.feature,
            route=capped.route,
            status=capped.status,
            data=serialize_payload(capped.payload),
            consumed=0,
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to append %s event: %s", capped.type, error)
            return False
        return True

    def drain_unconsumed(self) -> list[Event]:
        """Atomically claim every unconsumed row and return it in insertion order."""

        if self.engine is None:
            return []
        consumed_at = to_db_datetime(self._clock())
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    sa_update(EventRecord)
                    .where(col(EventRecord.consumed) == 0)
                    .values(consumed=1, consumed_at=consumed_at)
                    .returning(
                        col(EventRecord.id),
                        col(EventRecord.type),
                        col(EventRecord.trace_id),
                        col(EventRecord.timestamp),
                        col(EventRecord.environment),
                        col(EventRecord.feature),
                        col(EventRecord.route),
                        col(EventRecord.status),
                        col(EventRecord.data),
                        col(EventRecord.consumed),
                        col(EventRecord.consumed_at),
                    )
                    .execution_options(synchronize_session=False),
                ).all()
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to drain events from %s: %s", self.db_path, error)
            return []

        events: list[Event] = []
        for row in sorted(rows, key=lambda item: item.id):
            event = _row_to_event(row)
            if event is None:
                logger.debug("Discarded malformed event row id=%s", row.id)
                continue
            events.append(event)
        return events

    def recent(self, limit: int = 50) -> list[Event]:
        """Query recent events regardless of consumed status."""

        if self.engine is None:
            return []
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(EventRecord).order_by(col(EventRecord.id).desc()).limit(limit),
                ).all()
        except SQLAlchemyError as error:
            logger.warning("Failed to read recent events: %s", error)
            return []
        events = [_row_to_event(row) for row in rows]
        return [event for event in events if event is not None]

    def pending_count(self) -> int:
        if self.engine is None:
            return 0
        try:
            with Session(self.engine) as session:
                return int(
                    session.exec(
                        select(func.count())
                        .select_from(EventRecord)
                        .where(col(EventRecord.consumed) == 0),
                    ).one(),
                )
        except SQLAlchemyError as error:
            logger.warning("Failed to count pending events: %s", error)
            return 0

    def log_access(self, entry: AccessLog) -> bool:
        """Insert an access log entry, truncating input/error at 64KB and user agent at 1KB."""

        if self.engine is None:
            return False
        row = AccessLogRecord(
            timestamp=to_db_datetime(entry.timestamp),
            method=entry.method,
            path=entry.path,
            status=entry.status,
            duration_ms=entry.duration_ms,
            ip=entry.ip,
            feature=entry.feature,
            request_id=entry.request_id,
            input=truncate_bytes(entry.input, MAX_DATA_BYTES),
            error=truncate_bytes(entry.error, MAX_DATA_BYTES),
            user_agent=truncate_bytes(entry.user_agent, MAX_USER_AGENT_BYTES),
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to append access log for %s: %s", entry.path, error)
            return False
        return True

    def query_access(self, query: AccessLogQuery | None = None) -> list[AccessLog]:
        """Query access logs with optional filters, newest first."""

        if self.engine is None:
            return []
        query = query or AccessLogQuery()
        statement = select(AccessLogRecord)
        if query.feature:
            statement = statement.where(AccessLogRecord.feature == query.feature)
        if query.status is not None:
            statement = statement.where(AccessLogRecord.status == query.status)
        if query.since is not None:
            statement = statement.where(
                col(AccessLogRecord.timestamp) >= to_db_datetime(query.since),
            )
        statement = statement.order_by(col(AccessLogRecord.id).desc()).limit(query.limit)
        try:
            with Session(self.engine) as session:
                rows = session.exec(statement).all()
        except SQLAlchemyError as error:
            logger.warning("Failed to query access logs: %s", error)
            return []
        return [_to_access_log(row) for row in rows]

    def retain(self, policy: RetentionPolicy) -> RetentionResult:
        """Delete consumed events and access logs past their age; compact when oversized."""

        result = RetentionResult()
        engine = self.engine
        if engine is None:
            return result
        now = self._clock()
        cutoff = now - timedelta(days=policy.max_age_days)
        try:
            events_deleted, access_deleted = _prune(
                engine,
                event_cutoff=cutoff,
                access_cutoff=cutoff,
            )
            result.events_deleted += events_deleted
            result.access_logs_deleted += access_deleted

            if sqlite_size_bytes(self.db_path) > policy.max_size_mb * 1024 * 1024:
                result.aggressive = True
                events_deleted, access_deleted = _prune(
                    engine,
                    event_cutoff=now - timedelta(seconds=policy.aggressive_event_window_seconds),
                    access_cutoff=now - timedelta(seconds=policy.aggressive_access_window_seconds),
                )
                result.events_deleted += events_deleted
                result.access_logs_deleted += access_deleted
                _compact(engine)
                result.compacted = True
                logger.warning(
                    "Event database %s exceeded %.1f MB; pruned aggressively and vacuumed",
                    self.db_path,
                    policy.max_size_mb,
                )
        except SQLAlchemyError as error:
            logger.warning("Retention pass failed for %s: %s", self.db_path, error)
        return result

    def _open(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.error("Cannot create event database directory %s: %s", self.db_path, error)
            return

        for attempt in (1, 2):
            try:
                self._init_schema()
                return
            except _OPEN_ERRORS as error:
                self._dispose()
                if not probe_sqlite_integrity(self.db_path):
                    logger.warning(
                        "Corrupt event database %s; deleting and recreating: %s",
                        self.db_path,
                        error,
                    )
                    break
                logger.warning(
                    "Event database %s failed to initialize (attempt %d): %s",
                    self.db_path,
                    attempt,
                    error,
                )

        try:
            remove_sqlite_files(self.db_path)
            self._init_schema()
        except _OPEN_ERRORS as error:
            self._dispose()
            logger.error(
                "Event database %s unavailable after recreation: %s",
                self.db_path,
                error,
            )

    def _init_schema(self) -> None:
        upgrade_head(self.db_path)
        engine = build_sqlite_engine(db_path=self.db_path, busy_timeout_ms=self.busy_timeout_ms)
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1 FROM events LIMIT 1"))
                connection.execute(text("SELECT 1 FROM access_logs LIMIT 1"))
        except SQLAlchemyError:
            engine.dispose()
            raise
        self.engine = engine

    def _dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None


def _prune(
    engine: Engine,
    *,
    event_cutoff: datetime,
    access_cutoff: datetime,
) -> tuple[int, int]:
    with Session(engine) as session:
        events_result = session.exec(
            delete(EventRecord).where(
                col(EventRecord.consumed) == 1,
                col(EventRecord.timestamp) < to_db_datetime(event_cutoff),
            ),
        )
        access_result = session.exec(
            delete(AccessLogRecord).where(
                col(AccessLogRecord.timestamp) < to_db_datetime(access_cutoff),
            ),
        )
        session.commit()
        return int(events_result.rowcount or 0), int(access_result.rowcount or 0)


def _compact(engine: Engine) -> None:
    with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as connection:
        connection.execute(text("VACUUM"))
        connection.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))


def _row_to_event(row: Any) -> Event | None:
    payload = _parse_payload(row.data)
    if payload is None:
        return None
    return Event(
        type=row.type,
        trace_id=row.trace_id,
        timestamp=to_utc_aware_datetime(row.timestamp),
        environment=row.environment,
        feature=row.feature,
        route=row.route,
        status=row.status,
        payload=payload,
        consumed=bool(row.consumed),
        consumed_at=(
            to_utc_aware_datetime(row.consumed_at) if row.consumed_at is not None else None
        ),
    )


def _parse_payload(data: str) -> dict[str, Any] | str | None:
    try:
        value = json.loads(data)
    except json.JSONDecodeError:
        if len(data.encode("utf-8")) >= MAX_DATA_BYTES - _TRUNCATION_SLACK_BYTES:
            return data
        return None
    if isinstance(value, dict):
        return value
    return None


def _to_access_log(row: AccessLogRecord) -> AccessLog:
    return AccessLog(
        timestamp=to_utc_aware_datetime(row.timestamp),
        method=row.method,
        path=row.path,
        status=row.status,
        duration_ms=row.duration_ms,
        ip=row.ip,
        feature=row.feature,
        request_id=row.request_id,
        input=row.input,
        error=row.error,
        user_agent=row.user_agent,
    )
