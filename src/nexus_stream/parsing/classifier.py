"""Dual-channel stream classification: reasoning vs. answer text.

Two reasoning conventions are recognised at the same time:

* out-of-band fragments prefixed with ``REASONING_SENTINEL`` (produced by
  the client from ``delta.reasoning_content``), which are reasoning in
  their entirety;
* inline ``<think>...</think>`` pairs inside ordinary content fragments.

Inline tags may arrive split across fragments, so the tail of each scan
that could still be the start of the awaited tag is carried into the next
one.
"""

from __future__ import annotations

import logging
import re

from nexus_stream.types import (
    REASONING_SENTINEL,
    ChannelMode,
    ClassifiedEvent,
    Content,
    Fragment,
    Thinking,
)

_logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)


def pending_marker_suffix(buffer: str, marker: str) -> int:
    """Length of the longest suffix of *buffer* that is a proper prefix of *marker*.

    >>> pending_marker_suffix("hello<thi", "<think>")
    4
    >>> pending_marker_suffix("hello", "<think>")
    0
    """
    max_len = min(len(buffer), len(marker) - 1)
    for length in range(max_len, 0, -1):
        if buffer.endswith(marker[:length]):
            return length
    return 0


class DualChannelClassifier:
    """Splits a fragment sequence into thinking and content events.

    One instance per session; ``consume()`` must be called with fragments
    in arrival order, then ``finish()`` once at stream end.

    Every ``consume()`` call returns at least one event: a fragment that
    yields no text (only tags, or held back as carry-over) produces an
    empty ``Content`` so consumers see one event per fragment.
    """

    def __init__(self, thinking_enabled: bool = True) -> None:
        self.thinking_enabled = thinking_enabled
        self.mode = ChannelMode.CONTENT
        self.carry = ""
        self._content: list[str] = []
        self._thinking: list[str] = []
        # chars emitted in the current content segment, and whether that
        # segment was opened by a closing tag
        self._segment_chars = 0
        self._after_close = False
        self._finished = False

    # ------------------------------------------------------------------
    # Accumulators
    # ------------------------------------------------------------------

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def in_reasoning(self) -> bool:
        return self.mode is ChannelMode.REASONING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def consume(self, fragment: Fragment) -> list[ClassifiedEvent]:
        """Classify one fragment."""
        if self._finished:
            raise RuntimeError("classifier already finished")

        if fragment.startswith(REASONING_SENTINEL):
            text = fragment[len(REASONING_SENTINEL):]
            if not self.thinking_enabled:
                return [Content("")]
            self._thinking.append(text)
            return [Thinking(text)]

        if not self.thinking_enabled:
            self._content.append(fragment)
            return [Content(fragment)]

        events = self._scan(self.carry + fragment)
        return events or [Content("")]

    def finish(self) -> list[ClassifiedEvent]:
        """Flush the carry-over into the active channel.

        A stream that ends inside an unclosed ``<think>`` keeps the split
        already made: text before the stray tag stayed content, text after
        it went to thinking.
        """
        if self._finished:
            return []
        self._finished = True

        events: list[ClassifiedEvent] = []
        tail, self.carry = self.carry, ""
        if self.in_reasoning:
            _logger.debug("Stream ended inside an unclosed reasoning block")
            self._emit_thinking(tail, events)
        else:
            self._emit_content(tail, events)
        return events

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scan(self, text: str) -> list[ClassifiedEvent]:
        events: list[ClassifiedEvent] = []
        self.carry = ""
        pos = 0

        while True:
            if self.mode is ChannelMode.CONTENT:
                idx = text.find(THINK_OPEN, pos)
                if idx == -1:
                    end = len(text) - pending_marker_suffix(text[pos:], THINK_OPEN)
                    self._emit_content(text[pos:end], events)
                    self.carry = text[end:]
                    return events
                self._emit_content(text[pos:idx], events)
                if self._after_close and self._segment_chars == 0:
                    # zero-length answer segment between </think> and <think>
                    events.append(Content(""))
                self.mode = ChannelMode.REASONING
                self._after_close = False
                self._segment_chars = 0
                pos = idx + len(THINK_OPEN)
            else:
                idx = text.find(THINK_CLOSE, pos)
                if idx == -1:
                    end = len(text) - pending_marker_suffix(text[pos:], THINK_CLOSE)
                    self._emit_thinking(text[pos:end], events)
                    self.carry = text[end:]
                    return events
                self._emit_thinking(text[pos:idx], events)
                self.mode = ChannelMode.CONTENT
                self._after_close = True
                self._segment_chars = 0
                pos = idx + len(THINK_CLOSE)

    def _emit_content(self, text: str, events: list[ClassifiedEvent]) -> None:
        if not text:
            return
        self._content.append(text)
        self._segment_chars += len(text)
        events.append(Content(text))

    def _emit_thinking(self, text: str, events: list[ClassifiedEvent]) -> None:
        if not text:
            return
        self._thinking.append(text)
        events.append(Thinking(text))


# ---------------------------------------------------------------------------
# Post-processing helpers
# ---------------------------------------------------------------------------

def strip_thinking_tags(text: str) -> str:
    """Remove complete ``<think>...</think>`` blocks (used for history context)."""
    return _THINK_BLOCK.sub("", text or "").strip()


def strip_delimiter_artifacts(content: str, reasoning: str = "") -> tuple[str, str]:
    """Clean leftover reasoning tags out of final content.

    Returns ``(content, reasoning)``.  When content still holds a
    ``</think>``, everything between the preceding ``<think>`` (or the
    start of the text, if there is none) and the close tag is reasoning;
    it becomes the reasoning only if none was captured while streaming.
    """
    if THINK_CLOSE in content:
        head, tail = content.split(THINK_CLOSE, 1)
        if THINK_OPEN in head:
            before, inner = head.split(THINK_OPEN, 1)
        else:
            before, inner = "", head
        if not reasoning.strip():
            reasoning = inner.strip()
        content = before + tail.lstrip()
    content = strip_thinking_tags(content)
    content = content.replace(THINK_OPEN, "").replace(THINK_CLOSE, "")
    return content.strip(), reasoning


def split_reasoning(text: str) -> tuple[str, str]:
    """Split a complete, non-streamed response into ``(reasoning, content)``."""
    classifier = DualChannelClassifier()
    classifier.consume(text)
    classifier.finish()
    return classifier.thinking.strip(), classifier.content.strip()
