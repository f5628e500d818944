"""Durable incident queue: one contract, directory and SQLite strategies."""

from spark_relay.events.base import EventStore, open_event_store
from spark_relay.events.directory import DirectoryEventStore
from spark_relay.events.producer import EventEmitter
from spark_relay.events.sqlite import SQLiteEventStore

__all__ = [
    "DirectoryEventStore",
    "EventEmitter",
    "EventStore",
    "SQLiteEventStore",
    "open_event_store",
]
