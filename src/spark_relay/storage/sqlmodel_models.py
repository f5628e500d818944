"""SQLModel ORM tables for the event queue and access log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text, text
from sqlmodel import Field, SQLModel


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_events_poll", "consumed", "id"),
        Index("idx_events_timestamp", "timestamp"),
    )

    id: int | None = Field(default=None, primary_key=True)
    type: str = Field(sa_column=Column(Text, nullable=False))
    trace_id: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    environment: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    feature: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    route: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    data: str = Field(sa_column=Column(Text, nullable=False))
    consumed: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    consumed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class AccessLogRecord(SQLModel, table=True):
    __tablename__ = "access_logs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_access_logs_timestamp", "timestamp"),
        Index("idx_access_logs_feature", "feature"),
    )

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    method: str = Field(sa_column=Column(Text, nullable=False))
    path: str = Field(sa_column=Column(Text, nullable=False))
    status: int = Field(sa_column=Column(Integer, nullable=False))
    duration_ms: float
    ip: str | None = None
    feature: str | None = None
    request_id: str | None = None
    input: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    user_agent: str | None = None
