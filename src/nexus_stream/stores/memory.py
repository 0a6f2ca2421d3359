"""Dict-backed stores, used by tests and the ``--ephemeral`` CLI mode."""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from typing import Any

from nexus_stream.types import ExtractedRecord, Turn


class InMemoryTurnStore:
    """Saving a turn whose id already exists replaces it."""

    def __init__(self) -> None:
        self.turns: dict[str, Turn] = {}

    def save(self, turn: Turn) -> Turn:
        stored = turn if turn.id else replace(turn, id=uuid.uuid4().hex)
        self.turns[stored.id] = stored
        return stored

    def find_history(self, conversation_id: str) -> list[Turn]:
        history = [t for t in self.turns.values() if t.conversation_id == conversation_id]
        return sorted(history, key=lambda t: t.created_at)


class InMemoryRecordStore:
    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}

    def save(self, parent_id: str, record: ExtractedRecord) -> dict[str, Any]:
        record_id = f"{parent_id}-{record.ordinal}"
        self.records[record_id] = {
            "id": record_id,
            "parentId": parent_id,
            "sequenceOrder": record.ordinal,
            "payload": dict(record.payload),
        }
        return {"id": record_id, "sequenceOrder": record.ordinal}

    def records_for(self, parent_id: str) -> list[dict[str, Any]]:
        rows = [r for r in self.records.values() if r["parentId"] == parent_id]
        return sorted(rows, key=lambda r: r["sequenceOrder"])


class InMemoryAggregateStore:
    def __init__(self) -> None:
        self.aggregates: dict[str, dict[str, Any]] = {}

    def create_draft(self, owner_id: str, attributes: dict[str, Any]) -> str:
        aggregate_id = uuid.uuid4().hex
        now = time.time()
        self.aggregates[aggregate_id] = {
            **attributes,
            "id": aggregate_id,
            "ownerId": owner_id,
            "status": "draft",
            "total": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        return aggregate_id

    def finalize_counts(self, aggregate_id: str, total: int) -> None:
        # Conversations are created outside the pipeline; upsert them here.
        agg = self.aggregates.setdefault(
            aggregate_id, {"id": aggregate_id, "createdAt": time.time()},
        )
        agg["total"] = total
        agg["status"] = "ready"
        agg["updatedAt"] = time.time()
