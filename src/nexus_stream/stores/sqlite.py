"""SQLite-backed turn, record and aggregate stores."""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

from nexus_stream.types import ExtractedRecord, Turn


class SQLiteDatabase:
    """Owns the connection and schema shared by the three stores."""

    def __init__(self, db_path: str = "~/.nexus_stream/nexus.db"):
        if db_path == ":memory:":
            self.db_path = None
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
        self._init_schema()
        self.turns = SQLiteTurnStore(self._conn)
        self.records = SQLiteRecordStore(self._conn)
        self.aggregates = SQLiteAggregateStore(self._conn)

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS turns (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                reasoning TEXT DEFAULT '',
                model TEXT DEFAULT '',
                truncated INTEGER DEFAULT 0,
                created_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS aggregates (
                id TEXT PRIMARY KEY,
                owner_id TEXT DEFAULT '',
                status TEXT DEFAULT 'draft',
                total INTEGER DEFAULT 0,
                attributes TEXT DEFAULT '{}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                parent_id TEXT NOT NULL,
                sequence_order INTEGER NOT NULL,
                title TEXT DEFAULT '',
                payload TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_records_parent ON records(parent_id);
        """)
        self._conn.commit()

    def close(self):
        self._conn.close()


class SQLiteTurnStore:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def save(self, turn: Turn) -> Turn:
        """Insert or replace *turn*, keyed by its id."""
        stored = turn if turn.id else replace(turn, id=uuid.uuid4().hex)
        self._conn.execute(
            "INSERT OR REPLACE INTO turns "
            "(id, conversation_id, role, content, reasoning, model, truncated, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (stored.id, stored.conversation_id, stored.role, stored.content,
             stored.reasoning, stored.model, int(stored.truncated), stored.created_at),
        )
        self._conn.commit()
        return stored

    def find_history(self, conversation_id: str) -> list[Turn]:
        rows = self._conn.execute(
            "SELECT id, role, content, reasoning, model, truncated, created_at "
            "FROM turns WHERE conversation_id = ? ORDER BY created_at",
            (conversation_id,),
        ).fetchall()
        return [
            Turn(
                conversation_id=conversation_id,
                role=role,
                content=content,
                reasoning=reasoning,
                model=model,
                truncated=bool(truncated),
                created_at=ts,
                id=turn_id,
            )
            for turn_id, role, content, reasoning, model, truncated, ts in rows
        ]

    def conversations(self, limit: int = 20) -> list[tuple[str, int, float]]:
        """(conversation_id, turn count, last activity), most recent first."""
        return self._conn.execute(
            "SELECT conversation_id, COUNT(*), MAX(created_at) FROM turns "
            "GROUP BY conversation_id ORDER BY MAX(created_at) DESC LIMIT ?",
            (limit,),
        ).fetchall()


class SQLiteRecordStore:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def save(self, parent_id: str, record: ExtractedRecord) -> dict[str, Any]:
        """Store a record; the id is derived from parent and ordinal."""
        record_id = f"{parent_id}-{record.ordinal}"
        title = str(record.payload.get("title") or "Untitled Topic")
        self._conn.execute(
            "INSERT OR REPLACE INTO records "
            "(id, parent_id, sequence_order, title, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (record_id, parent_id, record.ordinal, title,
             json.dumps(record.payload), time.time()),
        )
        self._conn.commit()
        return {"id": record_id, "sequenceOrder": record.ordinal}

    def records_for(self, parent_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT id, sequence_order, payload FROM records "
            "WHERE parent_id = ? ORDER BY sequence_order",
            (parent_id,),
        ).fetchall()
        return [
            {**json.loads(payload), "id": record_id, "sequenceOrder": order}
            for record_id, order, payload in rows
        ]


class SQLiteAggregateStore:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def create_draft(self, owner_id: str, attributes: dict[str, Any]) -> str:
        aggregate_id = uuid.uuid4().hex
        now = time.time()
        self._conn.execute(
            "INSERT INTO aggregates (id, owner_id, status, total, attributes, created_at, updated_at) "
            "VALUES (?, ?, 'draft', 0, ?, ?, ?)",
            (aggregate_id, owner_id, json.dumps(attributes), now, now),
        )
        self._conn.commit()
        return aggregate_id

    def finalize_counts(self, aggregate_id: str, total: int) -> None:
        now = time.time()
        self._conn.execute(
            "INSERT INTO aggregates (id, status, total, created_at, updated_at) "
            "VALUES (?, 'ready', ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET status='ready', total=?, updated_at=?",
            (aggregate_id, total, now, now, total, now),
        )
        self._conn.commit()

    def get(self, aggregate_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT owner_id, status, total, attributes, created_at, updated_at "
            "FROM aggregates WHERE id = ?",
            (aggregate_id,),
        ).fetchone()
        if row is None:
            return None
        owner_id, status, total, attrs, created, updated = row
        return {
            **json.loads(attrs),
            "id": aggregate_id,
            "ownerId": owner_id,
            "status": status,
            "total": total,
            "createdAt": created,
            "updatedAt": updated,
        }
