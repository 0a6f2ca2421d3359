"""Incremental extraction of structured records from a narrative stream.

Expected stream shape::

    THINKING: <free text> TOPIC: <payload 1> TOPIC: <payload 2> ... TOPIC: <payload N>

Narrative text is flushed as it arrives.  A record payload is decoded as
soon as the next ``TOPIC:`` proves it complete; the last one is decoded
by ``finish()``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from nexus_stream.errors import DecodeError
from nexus_stream.types import (
    ExtractedRecord,
    ExtractorEvent,
    ExtractorMode,
    Fragment,
    Narrative,
)

from .classifier import pending_marker_suffix
from .decoder import decode_record_payload

_logger = logging.getLogger(__name__)

NARRATIVE_MARKER = "THINKING:"
RECORD_MARKER = "TOPIC:"

PayloadDecoder = Callable[[str], dict[str, Any]]


class StructuredStreamExtractor:
    """Separates a leading narrative from marker-prefixed records.

    Parameters
    ----------
    decoder:
        Turns one raw payload into a dict; raises ``DecodeError`` on
        failure.  A failed payload is skipped but still consumes its
        ordinal.
    """

    def __init__(
        self,
        decoder: PayloadDecoder = decode_record_payload,
        narrative_marker: str = NARRATIVE_MARKER,
        record_marker: str = RECORD_MARKER,
    ) -> None:
        self._decoder = decoder
        self._narrative_marker = narrative_marker
        self._record_marker = record_marker

        self.mode = ExtractorMode.NARRATIVE
        self.buffer = ""
        self.records: list[ExtractedRecord] = []
        self.skipped = 0
        self._narrative: list[str] = []
        self._narrative_started = False
        self._next_ordinal = 1
        self._finished = False

    @property
    def narrative(self) -> str:
        return "".join(self._narrative)

    @property
    def next_ordinal(self) -> int:
        return self._next_ordinal

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def consume(self, fragment: Fragment) -> list[ExtractorEvent]:
        if self._finished:
            raise RuntimeError("extractor already finished")
        self.buffer += fragment
        events: list[ExtractorEvent] = []
        if self.mode is ExtractorMode.NARRATIVE:
            self._scan_narrative(events)
        if self.mode is ExtractorMode.RECORD:
            self._scan_records(events)
        return events

    def finish(self) -> list[ExtractorEvent]:
        """Flush the narrative tail or decode the final record."""
        if self._finished:
            return []
        self._finished = True

        events: list[ExtractorEvent] = []
        tail, self.buffer = self.buffer, ""
        if self.mode is ExtractorMode.RECORD:
            self._close_record(tail, events)
        elif self._narrative_started:
            self._emit_narrative(tail.rstrip(), events)
        elif tail.strip():
            _logger.debug("Discarding %d chars without any marker", len(tail))
        _logger.info(
            "Extraction finished: %d records, %d skipped",
            len(self.records), self.skipped,
        )
        return events

    # ------------------------------------------------------------------
    # Narrative section
    # ------------------------------------------------------------------

    def _scan_narrative(self, events: list[ExtractorEvent]) -> None:
        if not self._narrative_started and not self._find_narrative_start():
            return
        if self.mode is ExtractorMode.RECORD:
            return

        idx = self.buffer.find(self._record_marker)
        if idx != -1:
            self._emit_narrative(self.buffer[:idx].rstrip(), events)
            self.buffer = self.buffer[idx + len(self._record_marker):]
            self.mode = ExtractorMode.RECORD
            return

        # Hold back a possible marker prefix and any trailing whitespace,
        # which is dropped if the record marker follows.
        held = pending_marker_suffix(self.buffer, self._record_marker)
        body = self.buffer[: len(self.buffer) - held]
        upto = len(body.rstrip())
        self._emit_narrative(body[:upto], events)
        self.buffer = self.buffer[upto:]

    def _find_narrative_start(self) -> bool:
        """Skip preamble up to the narrative marker.

        Returns True once narrative text can be scanned.  A record marker
        appearing first switches straight to record mode.
        """
        n_idx = self.buffer.find(self._narrative_marker)
        r_idx = self.buffer.find(self._record_marker)

        if r_idx != -1 and (n_idx == -1 or r_idx < n_idx):
            _logger.debug("No narrative section before first record")
            self.buffer = self.buffer[r_idx + len(self._record_marker):]
            self.mode = ExtractorMode.RECORD
            return True

        if n_idx == -1:
            keep = max(
                pending_marker_suffix(self.buffer, self._narrative_marker),
                pending_marker_suffix(self.buffer, self._record_marker),
            )
            self.buffer = self.buffer[len(self.buffer) - keep:]
            return False

        self.buffer = self.buffer[n_idx + len(self._narrative_marker):]
        self._narrative_started = True
        return True

    def _emit_narrative(self, text: str, events: list[ExtractorEvent]) -> None:
        if not self._narrative:
            text = text.lstrip()
        if not text:
            return
        self._narrative.append(text)
        events.append(Narrative(text))

    # ------------------------------------------------------------------
    # Record section
    # ------------------------------------------------------------------

    def _scan_records(self, events: list[ExtractorEvent]) -> None:
        while True:
            idx = self.buffer.find(self._record_marker)
            if idx == -1:
                return
            raw = self.buffer[:idx]
            self.buffer = self.buffer[idx + len(self._record_marker):]
            self._close_record(raw, events)

    def _close_record(self, raw: str, events: list[ExtractorEvent]) -> None:
        if not raw.strip():
            return
        ordinal = self._next_ordinal
        self._next_ordinal += 1
        try:
            payload = self._decoder(raw)
        except DecodeError as e:
            self.skipped += 1
            _logger.warning("Skipping record %d: %s", ordinal, e)
            return
        record = ExtractedRecord(ordinal=ordinal, payload=payload, raw=raw.strip())
        self.records.append(record)
        events.append(record)
