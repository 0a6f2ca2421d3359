"""Collaborator contracts consumed by the pipeline.

Stores may be synchronous or asynchronous: every call site goes through
``maybe_await``.  Writes are assumed at-least-once.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Protocol, TypeVar, Union

from nexus_stream.types import ExtractedRecord, Turn

T = TypeVar("T")

MaybeAwaitable = Union[T, Awaitable[T]]


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


class TurnStore(Protocol):
    """Conversation turns."""

    def save(self, turn: Turn) -> MaybeAwaitable[Turn]:
        """Persist *turn*; returns it with ``id`` populated."""
        ...

    def find_history(self, conversation_id: str) -> MaybeAwaitable[list[Turn]]:
        """All turns of a conversation, oldest first."""
        ...


class RecordStore(Protocol):
    """Structured records (curriculum topics)."""

    def save(
        self, parent_id: str, record: ExtractedRecord,
    ) -> MaybeAwaitable[dict[str, Any]]:
        """Persist *record* under *parent_id*.

        Returns the stored fields to merge into the framed ``topic`` event;
        at least ``id`` and ``sequenceOrder``.
        """
        ...


class AggregateStore(Protocol):
    """Owners of turns and records (conversations, roadmaps)."""

    def create_draft(
        self, owner_id: str, attributes: dict[str, Any],
    ) -> MaybeAwaitable[str]:
        """Create a draft aggregate and return its id."""
        ...

    def finalize_counts(self, aggregate_id: str, total: int) -> MaybeAwaitable[None]:
        """Record the final child count and bump ``updated_at``."""
        ...
