"""Persistence collaborators: contracts plus in-memory and SQLite backends."""

from nexus_stream.stores.base import (
    AggregateStore,
    RecordStore,
    TurnStore,
    maybe_await,
)
from nexus_stream.stores.memory import (
    InMemoryAggregateStore,
    InMemoryRecordStore,
    InMemoryTurnStore,
)
from nexus_stream.stores.sqlite import SQLiteDatabase

__all__ = [
    "AggregateStore",
    "InMemoryAggregateStore",
    "InMemoryRecordStore",
    "InMemoryTurnStore",
    "RecordStore",
    "SQLiteDatabase",
    "TurnStore",
    "maybe_await",
]
