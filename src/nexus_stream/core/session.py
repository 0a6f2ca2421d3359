"""Per-session state: parser, counters and the draft-aggregate flag."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from nexus_stream.events.framing import FramedEvent, done_event, session_event
from nexus_stream.parsing.classifier import DualChannelClassifier
from nexus_stream.parsing.extractor import StructuredStreamExtractor
from nexus_stream.types import Completed


class SessionMode(enum.Enum):
    CHAT = "chat"
    STRUCTURED = "structured"


@dataclass
class StreamSession:
    """Everything one streamed completion owns.

    Nothing here is shared between sessions.  For chat sessions
    ``conversation_id`` names the conversation aggregate; for structured
    sessions ``aggregate_id`` stays ``None`` until the first record is
    persisted and the draft is created.
    """

    mode: SessionMode
    model: str
    owner_id: str = ""
    conversation_id: str = ""
    is_new: bool = False
    thinking_enabled: bool = True
    max_tokens: int = 16384
    temperature: float = 0.7
    attributes: dict[str, Any] = field(default_factory=dict)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)

    aggregate_id: str | None = None
    fragments: int = 0
    saved_records: list[dict[str, Any]] = field(default_factory=list)
    classifier: DualChannelClassifier | None = None
    extractor: StructuredStreamExtractor | None = None

    def __post_init__(self) -> None:
        if self.mode is SessionMode.CHAT:
            self.aggregate_id = self.conversation_id or None
            if self.classifier is None:
                self.classifier = DualChannelClassifier(self.thinking_enabled)
        elif self.extractor is None:
            self.extractor = StructuredStreamExtractor()

    @classmethod
    def chat(
        cls,
        conversation_id: str = "",
        model: str = "",
        **kwargs: Any,
    ) -> StreamSession:
        """Start a chat session; a new conversation id is minted if empty."""
        is_new = not conversation_id
        return cls(
            mode=SessionMode.CHAT,
            model=model,
            conversation_id=conversation_id or uuid.uuid4().hex,
            is_new=is_new,
            **kwargs,
        )

    @classmethod
    def structured(cls, owner_id: str = "", model: str = "", **kwargs: Any) -> StreamSession:
        return cls(mode=SessionMode.STRUCTURED, model=model, owner_id=owner_id, **kwargs)

    @property
    def draft_created(self) -> bool:
        return self.mode is SessionMode.STRUCTURED and self.aggregate_id is not None

    @property
    def elapsed(self) -> float:
        return time.time() - self.started_at

    def snapshot(self) -> Completed:
        """What the parser has accumulated so far."""
        if self.classifier is not None:
            return Completed(
                content=self.classifier.content,
                reasoning=self.classifier.thinking,
            )
        if self.extractor is not None:
            return Completed(
                content=self.extractor.narrative,
                records=list(self.extractor.records),
            )
        return Completed()

    def release(self) -> None:
        """Drop parser state once the session is finalized."""
        self.classifier = None
        self.extractor = None

    # ------------------------------------------------------------------
    # Framed events owned by the session
    # ------------------------------------------------------------------

    def opening_event(self) -> FramedEvent:
        if self.mode is SessionMode.CHAT:
            return session_event(
                self.session_id,
                conversationId=self.conversation_id,
                isNew=self.is_new,
            )
        return session_event(self.session_id)

    def done_event(self) -> FramedEvent:
        if self.mode is SessionMode.CHAT:
            return done_event(
                sessionId=self.session_id,
                conversationId=self.conversation_id,
                model=self.model,
            )
        return done_event(
            roadmapId=self.aggregate_id,
            totalTopics=len(self.saved_records),
        )
