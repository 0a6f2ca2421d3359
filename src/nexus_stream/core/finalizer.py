"""Exactly-once session finalization.

``SessionFinalizer.finalize`` turns a terminal outcome into persisted state
and a terminal framed event.  Reports are cached by session id, so a
duplicate call (a retry after a disconnect, a double ``finally``) returns
the first report and writes nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any

from nexus_stream.core.session import SessionMode, StreamSession
from nexus_stream.errors import PersistenceError
from nexus_stream.events.bus import EventBus
from nexus_stream.events.framing import FramedEvent, error_event
from nexus_stream.parsing.classifier import strip_delimiter_artifacts
from nexus_stream.stores.base import AggregateStore, TurnStore, maybe_await
from nexus_stream.types import (
    Cancelled,
    Completed,
    Failed,
    Notification,
    NotificationType,
    SessionResult,
    Turn,
)

_logger = logging.getLogger(__name__)

_NOTIFICATION = {
    Completed: NotificationType.SESSION_COMPLETED,
    Failed: NotificationType.SESSION_FAILED,
    Cancelled: NotificationType.SESSION_CANCELLED,
}


@dataclass
class FinalizeReport:
    """What one finalize call did.

    ``outcome`` is the cleaned result; it is kept even when persisting it
    failed (``error`` is then set and ``event`` is an error event).
    """

    session_id: str
    outcome: SessionResult
    event: FramedEvent
    turn: Turn | None = None
    error: PersistenceError | None = None

    @property
    def persisted(self) -> bool:
        return self.turn is not None


class SessionFinalizer:
    """Persists a session's result once and emits its terminal event.

    Finished reports are remembered for the last *max_reports* sessions;
    a duplicate finalize inside that window writes nothing.
    """

    def __init__(
        self,
        turn_store: TurnStore | None = None,
        aggregate_store: AggregateStore | None = None,
        event_bus: EventBus | None = None,
        max_reports: int = 1024,
    ) -> None:
        self._turns = turn_store
        self._aggregates = aggregate_store
        self.event_bus = event_bus
        self.max_reports = max_reports
        self._in_flight: dict[str, asyncio.Future[FinalizeReport]] = {}
        self._reports: OrderedDict[str, FinalizeReport] = OrderedDict()

    def is_finalized(self, session_id: str) -> bool:
        return session_id in self._reports

    async def finalize(
        self, session: StreamSession, outcome: SessionResult,
    ) -> FinalizeReport:
        sid = session.session_id
        report = self._reports.get(sid)
        if report is not None:
            _logger.debug("Session %s already finalized; returning cached report", sid)
            self._reports.move_to_end(sid)
            return report

        pending = self._in_flight.get(sid)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
            # The first caller was interrupted; this call takes over.
            _logger.debug("Retrying interrupted finalize of session %s", sid)
            return await self.finalize(session, outcome)

        fut: asyncio.Future[FinalizeReport] = asyncio.get_running_loop().create_future()
        self._in_flight[sid] = fut
        try:
            report = await self._finalize(session, outcome)
        except BaseException:
            fut.cancel()
            raise
        finally:
            self._in_flight.pop(sid, None)
        fut.set_result(report)
        self._remember(report)
        await self._notify(session, report)
        return report

    def _remember(self, report: FinalizeReport) -> None:
        self._reports[report.session_id] = report
        while len(self._reports) > self.max_reports:
            self._reports.popitem(last=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _finalize(
        self, session: StreamSession, outcome: SessionResult,
    ) -> FinalizeReport:
        sid = session.session_id
        try:
            if isinstance(outcome, Completed):
                outcome = _clean(outcome)
                report = FinalizeReport(sid, outcome, session.done_event())
                try:
                    report.turn = await self._persist(session, outcome)
                except PersistenceError as e:
                    _logger.error("Finalize of session %s failed: %s", sid, e)
                    report.error = e
                    report.event = error_event(e.message, e.kind)
                _logger.info(
                    "Session %s completed (%d content chars, %d reasoning chars, "
                    "%d records, %.1fs)",
                    sid, len(outcome.content), len(outcome.reasoning),
                    len(outcome.records), session.elapsed,
                )
                return report

            if isinstance(outcome, Failed):
                if outcome.partial is not None:
                    outcome = replace(outcome, partial=_clean(outcome.partial))
                report = FinalizeReport(sid, outcome, error_event(outcome.reason, outcome.kind))
                partial = outcome.partial
                if partial is not None and not partial.is_empty:
                    try:
                        report.turn = await self._persist(session, partial, truncated=True)
                    except PersistenceError as e:
                        _logger.error("Could not keep partial output of %s: %s", sid, e)
                        report.error = e
                _logger.info("Session %s failed (%s): %s", sid, outcome.kind, outcome.reason)
                return report

            report = FinalizeReport(sid, outcome, error_event(outcome.reason, "cancelled"))
            if session.draft_created:
                try:
                    await self._finalize_counts(session)
                except PersistenceError as e:
                    report.error = e
            _logger.info("Session %s cancelled after %d fragments", sid, session.fragments)
            return report
        finally:
            session.release()

    async def _persist(
        self, session: StreamSession, result: Completed, truncated: bool = False,
    ) -> Turn | None:
        turn = None
        if session.mode is SessionMode.CHAT and self._turns is not None:
            turn = Turn(
                conversation_id=session.conversation_id,
                role="assistant",
                content=result.content,
                reasoning=result.reasoning,
                model=session.model,
                truncated=truncated,
                id=f"{session.session_id}-assistant",
            )
            try:
                turn = await maybe_await(self._turns.save(turn))
            except Exception as e:
                raise PersistenceError(f"Failed to save turn: {e}") from e
        await self._finalize_counts(session)
        return turn

    async def _finalize_counts(self, session: StreamSession) -> None:
        if self._aggregates is None or session.aggregate_id is None:
            return
        try:
            if session.mode is SessionMode.CHAT and self._turns is not None:
                history = await maybe_await(self._turns.find_history(session.conversation_id))
                total = len(history)
            else:
                total = len(session.saved_records)
            await maybe_await(self._aggregates.finalize_counts(session.aggregate_id, total))
        except Exception as e:
            raise PersistenceError(f"Failed to update {session.aggregate_id}: {e}") from e

    async def _notify(self, session: StreamSession, report: FinalizeReport) -> None:
        if self.event_bus is None:
            return
        data: dict[str, Any] = {
            "mode": session.mode.value,
            "model": session.model,
            "fragments": session.fragments,
            "records": len(session.saved_records),
            "persisted": report.persisted,
        }
        if session.aggregate_id:
            data["aggregate_id"] = session.aggregate_id
        if report.error is not None:
            data["error"] = report.error.message
        await self.event_bus.publish(Notification(
            type=_NOTIFICATION[type(report.outcome)],
            session_id=session.session_id,
            data=data,
        ))


def _clean(result: Completed) -> Completed:
    content, reasoning = strip_delimiter_artifacts(result.content, result.reasoning)
    return replace(result, content=content, reasoning=reasoning)
