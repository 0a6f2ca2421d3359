"""Shared data types for the streaming completion pipeline."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Union

# A fragment is an opaque text unit delivered by the transport.
Fragment = str

# Prefix marking a fragment that came from ``delta.reasoning_content``.
# NUL bytes never occur in provider text, so the prefix cannot collide.
REASONING_SENTINEL = "\x00__REASONING__\x00"


# ---------------------------------------------------------------------------
# Parser modes
# ---------------------------------------------------------------------------

class ChannelMode(enum.Enum):
    """Active channel of the dual-channel classifier."""

    CONTENT = "content"
    REASONING = "reasoning"


class ExtractorMode(enum.Enum):
    """Active section of the structured stream extractor."""

    NARRATIVE = "narrative"
    RECORD = "record"


# ---------------------------------------------------------------------------
# Classified events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Thinking:
    """Reasoning text routed to the thinking channel."""

    text: str


@dataclass(frozen=True)
class Content:
    """User-facing answer text."""

    text: str


ClassifiedEvent = Union[Thinking, Content]


@dataclass(frozen=True)
class Narrative:
    """Free-form text preceding the structured records."""

    text: str


@dataclass(frozen=True)
class ExtractedRecord:
    """A structured record decoded from the stream.

    ``ordinal`` is 1-based and strictly increasing within a session.
    """

    ordinal: int
    payload: dict[str, Any]
    raw: str = ""


ExtractorEvent = Union[Narrative, ExtractedRecord]


# ---------------------------------------------------------------------------
# Session outcomes
# ---------------------------------------------------------------------------

@dataclass
class Completed:
    """The stream ended normally."""

    content: str = ""
    reasoning: str = ""
    records: list[ExtractedRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.content or self.reasoning or self.records)


@dataclass
class Failed:
    """The stream ended with an error.

    ``partial`` holds whatever was produced before a mid-stream failure.
    """

    reason: str
    kind: str = "internal"
    partial: Completed | None = None


@dataclass
class Cancelled:
    """The consumer stopped pulling or the task was cancelled."""

    reason: str = "cancelled"


SessionResult = Union[Completed, Failed, Cancelled]


# ---------------------------------------------------------------------------
# Persisted shapes
# ---------------------------------------------------------------------------

@dataclass
class Turn:
    """One message in a conversation, as persisted by the turn store."""

    conversation_id: str
    role: str  # user, assistant, system
    content: str
    reasoning: str = ""
    model: str = ""
    truncated: bool = False
    created_at: float = field(default_factory=time.time)
    id: str = ""

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationType(enum.Enum):
    """Lifecycle notifications published on the EventBus."""

    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"
    SESSION_CANCELLED = "session.cancelled"


@dataclass
class Notification:
    """Event published on the EventBus."""

    type: NotificationType
    session_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
