"""Caller-visible named events and their wire encoding.

Payloads are JSON objects; JSON encoding escapes quotes, backslashes and
control characters, so a payload always fits on a single ``data:`` line.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any

from nexus_stream.types import (
    ClassifiedEvent,
    ExtractedRecord,
    Narrative,
    Thinking,
)


class EventName(enum.Enum):
    SESSION = "session"
    THINKING = "thinking"
    CONTENT = "content"
    TOPIC = "topic"
    DONE = "done"
    ERROR = "error"


def encode_payload(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class FramedEvent:
    """A named event with a JSON object payload."""

    name: EventName
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> str:
        return encode_payload(self.data)

    @property
    def is_terminal(self) -> bool:
        return self.name in (EventName.DONE, EventName.ERROR)

    def to_sse(self) -> str:
        """Server-Sent Events wire form."""
        return f"event: {self.name.value}\ndata: {self.payload}\n\n"


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------

def frame_classified(event: ClassifiedEvent) -> FramedEvent:
    name = EventName.THINKING if isinstance(event, Thinking) else EventName.CONTENT
    return FramedEvent(name, {"content": event.text})


def frame_narrative(event: Narrative) -> FramedEvent:
    return FramedEvent(EventName.THINKING, {"content": event.text})


def frame_record(
    record: ExtractedRecord, stored: dict[str, Any] | None = None,
) -> FramedEvent:
    """Frame a decoded record, merged with what the record store returned."""
    data = dict(record.payload)
    if stored:
        data.update(stored)
    data.setdefault("sequenceOrder", record.ordinal)
    return FramedEvent(EventName.TOPIC, data)


def session_event(session_id: str, **extra: Any) -> FramedEvent:
    return FramedEvent(EventName.SESSION, {"sessionId": session_id, **extra})


def done_event(**data: Any) -> FramedEvent:
    return FramedEvent(EventName.DONE, data)


def error_event(message: str, kind: str = "internal") -> FramedEvent:
    return FramedEvent(EventName.ERROR, {"message": message, "kind": kind})
