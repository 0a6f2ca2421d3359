"""Session pipelines: client → parser → framed events → finalizer.

Each ``run()`` is an async generator of :class:`FramedEvent` for one
session.  The first event is always ``session``, the last is always the
terminal ``done`` or ``error`` event produced by the finalizer.  Closing
the generator early (``aclose()``) or cancelling the consuming task closes
the upstream stream and finalizes the session as ``Cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator

from nexus_stream.core.finalizer import SessionFinalizer
from nexus_stream.core.session import StreamSession
from nexus_stream.errors import NexusStreamError, PersistenceError
from nexus_stream.events.framing import (
    FramedEvent,
    frame_classified,
    frame_narrative,
    frame_record,
)
from nexus_stream.llm.client import AsyncCompletionClient
from nexus_stream.llm.request import CompletionRequest
from nexus_stream.parsing.classifier import strip_thinking_tags
from nexus_stream.stores.base import (
    AggregateStore,
    RecordStore,
    TurnStore,
    maybe_await,
)
from nexus_stream.types import (
    Cancelled,
    ExtractedRecord,
    Failed,
    Fragment,
    Narrative,
    Notification,
    NotificationType,
    SessionResult,
    Turn,
)

_logger = logging.getLogger(__name__)


class _BasePipeline:
    """Drives one session and guarantees exactly one finalize."""

    def __init__(self, client: AsyncCompletionClient, finalizer: SessionFinalizer):
        self._client = client
        self._finalizer = finalizer

    async def _prepare(self, session: StreamSession, prompt: str) -> CompletionRequest:
        raise NotImplementedError

    async def _consume(self, session: StreamSession, fragment: Fragment) -> list[FramedEvent]:
        raise NotImplementedError

    async def _finish(self, session: StreamSession) -> list[FramedEvent]:
        raise NotImplementedError

    async def _drive(self, session: StreamSession, prompt: str) -> AsyncIterator[FramedEvent]:
        outcome: SessionResult
        failure: tuple[str, str] | None = None
        tail: list[FramedEvent] = []
        try:
            yield session.opening_event()
            await self._announce(session)
            request = await self._prepare(session, prompt)
            async with aclosing(self._client.stream(request)) as fragments:
                async for fragment in fragments:
                    session.fragments += 1
                    for event in await self._consume(session, fragment):
                        yield event
            for event in await self._finish(session):
                yield event
            outcome = session.snapshot()
        except (asyncio.CancelledError, GeneratorExit):
            _logger.info("Session %s cancelled by consumer", session.session_id)
            await self._finalizer.finalize(session, Cancelled())
            raise
        except NexusStreamError as e:
            failure = (e.message or str(e), e.kind)
        except Exception as e:
            _logger.exception("Unexpected error in session %s", session.session_id)
            failure = (f"{type(e).__name__}: {e}", "internal")

        # Finalize before any further yield.
        try:
            if failure is not None:
                outcome, tail = await self._fail(session, *failure)
            report = await self._finalizer.finalize(session, outcome)
        except asyncio.CancelledError:
            _logger.info("Session %s cancelled while finalizing", session.session_id)
            await self._finalizer.finalize(session, Cancelled())
            raise
        for event in tail:
            yield event
        yield report.event

    async def _announce(self, session: StreamSession) -> None:
        bus = self._finalizer.event_bus
        if bus is None:
            return
        await bus.publish(Notification(
            type=NotificationType.SESSION_STARTED,
            session_id=session.session_id,
            data={"mode": session.mode.value, "model": session.model},
        ))

    async def _fail(
        self, session: StreamSession, reason: str, kind: str,
    ) -> tuple[Failed, list[FramedEvent]]:
        """Build the Failed outcome, flushing held-back parser text into it."""
        if not session.fragments:
            return Failed(reason=reason, kind=kind), []
        tail: list[FramedEvent] = []
        try:
            tail = await self._finish(session)
        except NexusStreamError as e:
            _logger.warning("Could not flush session %s: %s", session.session_id, e)
        return Failed(reason=reason, kind=kind, partial=session.snapshot()), tail


class ChatPipeline(_BasePipeline):
    """Multi-turn chat with thinking/content separation."""

    def __init__(
        self,
        client: AsyncCompletionClient,
        finalizer: SessionFinalizer,
        turn_store: TurnStore,
        system_prompt: str = "",
    ):
        super().__init__(client, finalizer)
        self._turns = turn_store
        self._system_prompt = system_prompt

    def run(self, session: StreamSession, message: str) -> AsyncIterator[FramedEvent]:
        """Stream one assistant reply to *message*."""
        return self._drive(session, message)

    async def _prepare(self, session: StreamSession, prompt: str) -> CompletionRequest:
        try:
            await maybe_await(self._turns.save(Turn(
                conversation_id=session.conversation_id,
                role="user",
                content=prompt,
            )))
            history = await maybe_await(self._turns.find_history(session.conversation_id))
        except Exception as e:
            raise PersistenceError(f"Failed to load conversation: {e}") from e

        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        for turn in history:
            if turn.role not in ("user", "assistant"):
                continue
            # Prior reasoning never goes back to the model.
            content = strip_thinking_tags(turn.content) if turn.role == "assistant" else turn.content
            if content.strip():
                messages.append({"role": turn.role, "content": content})

        return CompletionRequest.build(
            messages,
            model=session.model,
            temperature=session.temperature,
            max_tokens=session.max_tokens,
        )

    async def _consume(self, session: StreamSession, fragment: Fragment) -> list[FramedEvent]:
        return [frame_classified(e) for e in session.classifier.consume(fragment)]

    async def _finish(self, session: StreamSession) -> list[FramedEvent]:
        return [frame_classified(e) for e in session.classifier.finish()]


class RoadmapPipeline(_BasePipeline):
    """Structured generation: narrative reasoning followed by topic records."""

    def __init__(
        self,
        client: AsyncCompletionClient,
        finalizer: SessionFinalizer,
        record_store: RecordStore,
        aggregate_store: AggregateStore,
        system_prompt: str = "",
    ):
        super().__init__(client, finalizer)
        self._records = record_store
        self._aggregates = aggregate_store
        self._system_prompt = system_prompt

    def run(self, session: StreamSession, prompt: str) -> AsyncIterator[FramedEvent]:
        """Stream narrative and topics generated for *prompt*."""
        return self._drive(session, prompt)

    async def _prepare(self, session: StreamSession, prompt: str) -> CompletionRequest:
        messages = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": prompt})
        return CompletionRequest.build(
            messages,
            model=session.model,
            temperature=session.temperature,
            max_tokens=session.max_tokens,
        )

    async def _consume(self, session: StreamSession, fragment: Fragment) -> list[FramedEvent]:
        return await self._frame(session, session.extractor.consume(fragment))

    async def _finish(self, session: StreamSession) -> list[FramedEvent]:
        return await self._frame(session, session.extractor.finish())

    async def _frame(self, session: StreamSession, events: list) -> list[FramedEvent]:
        framed = []
        for event in events:
            if isinstance(event, Narrative):
                framed.append(frame_narrative(event))
            else:
                stored = await self._save_record(session, event)
                framed.append(frame_record(event, stored))
        return framed

    async def _save_record(self, session: StreamSession, record: ExtractedRecord) -> dict:
        try:
            if session.aggregate_id is None:
                session.aggregate_id = await maybe_await(
                    self._aggregates.create_draft(session.owner_id, dict(session.attributes)),
                )
                _logger.info(
                    "Created draft %s for session %s", session.aggregate_id, session.session_id,
                )
            stored = await maybe_await(self._records.save(session.aggregate_id, record))
        except Exception as e:
            raise PersistenceError(f"Failed to save record {record.ordinal}: {e}") from e
        session.saved_records.append(stored)
        _logger.debug("Saved record %d as %s", record.ordinal, stored.get("id"))
        return stored
