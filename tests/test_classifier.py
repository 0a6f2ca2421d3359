"""Tests for the dual-channel thinking/content classifier."""

import pytest

from nexus_stream.parsing.classifier import (
    DualChannelClassifier,
    pending_marker_suffix,
    split_reasoning,
    strip_delimiter_artifacts,
    strip_thinking_tags,
)
from nexus_stream.types import REASONING_SENTINEL, ChannelMode, Content, Thinking


def classify(fragments: list[str], thinking_enabled: bool = True):
    c = DualChannelClassifier(thinking_enabled)
    events = []
    for f in fragments:
        events.extend(c.consume(f))
    events.extend(c.finish())
    return c, events


def channel_text(events, kind) -> str:
    return "".join(e.text for e in events if isinstance(e, kind))


def split_every(text: str, n: int) -> list[str]:
    return [text[i:i + n] for i in range(0, len(text), n)]


class TestPendingMarkerSuffix:
    def test_partial_prefix(self):
        assert pending_marker_suffix("hello<thi", "<think>") == 4

    def test_no_prefix(self):
        assert pending_marker_suffix("hello", "<think>") == 0

    def test_full_marker_is_not_pending(self):
        # only proper prefixes are carried
        assert pending_marker_suffix("<think>", "<think>") == 0

    def test_single_char(self):
        assert pending_marker_suffix("abc<", "</think>") == 1


class TestInlineTags:
    def test_tag_split_across_fragments(self):
        c, events = classify(["<thi", "nk>hello wor", "ld</think>answer"])
        assert channel_text(events, Thinking) == "hello world"
        assert channel_text(events, Content) == "answer"
        assert c.thinking == "hello world"
        assert c.content == "answer"

    def test_plain_content(self):
        c, events = classify(["Hello ", "world"])
        assert events == [Content("Hello "), Content("world")]
        assert c.thinking == ""

    def test_close_tag_split(self):
        c, _ = classify(["<think>abc</th", "ink>done"])
        assert c.thinking == "abc"
        assert c.content == "done"

    def test_angle_bracket_that_is_not_a_tag(self):
        c, _ = classify(["a <", "b> c"])
        assert c.content == "a <b> c"

    def test_content_before_think(self):
        c, _ = classify(["intro <think>r</think> outro"])
        assert c.content == "intro  outro"
        assert c.thinking == "r"

    def test_multiple_blocks(self):
        c, _ = classify(["<think>a</think>x<think>b</think>y"])
        assert c.thinking == "ab"
        assert c.content == "xy"

    def test_mode_tracks_open_block(self):
        c = DualChannelClassifier()
        c.consume("<think>still thinking")
        assert c.mode is ChannelMode.REASONING
        assert c.in_reasoning


class TestSentinelFragments:
    def test_reasoning_fragment(self):
        c, events = classify([REASONING_SENTINEL + "step one", "answer"])
        assert events[0] == Thinking("step one")
        assert c.thinking == "step one"
        assert c.content == "answer"

    def test_sentinel_text_is_never_scanned(self):
        c, events = classify([REASONING_SENTINEL + "<think>literal"])
        assert events == [Thinking("<think>literal")]
        assert c.mode is ChannelMode.CONTENT

    def test_mixed_conventions(self):
        c, _ = classify([
            REASONING_SENTINEL + "oob ",
            "<think>inline</think>",
            "final",
        ])
        assert c.thinking == "oob inline"
        assert c.content == "final"


class TestCadence:
    def test_every_fragment_yields_an_event(self):
        c = DualChannelClassifier()
        for fragment in ["<thi", "nk>", "x", "</think>", "y"]:
            assert len(c.consume(fragment)) >= 1

    def test_tag_only_fragment_yields_empty_content(self):
        c = DualChannelClassifier()
        assert c.consume("<think>") == [Content("")]

    def test_empty_segment_between_markers(self):
        c = DualChannelClassifier()
        events = c.consume("<think>a</think><think>b</think>")
        assert events == [Thinking("a"), Content(""), Thinking("b")]
        assert c.content == ""


class TestFinish:
    def test_carry_flushed_to_content(self):
        c, events = classify(["answer <thi"])
        assert c.content == "answer <thi"
        assert events[-1] == Content("<thi")

    def test_unclosed_block_recovery(self):
        c, _ = classify(["before <think>after"])
        assert c.content == "before "
        assert c.thinking == "after"

    def test_carry_flushed_to_thinking(self):
        c, _ = classify(["<think>abc</thi"])
        assert c.thinking == "abc</thi"

    def test_finish_is_idempotent(self):
        c = DualChannelClassifier()
        c.consume("x<")
        assert c.finish() == [Content("<")]
        assert c.finish() == []

    def test_consume_after_finish_raises(self):
        c = DualChannelClassifier()
        c.finish()
        with pytest.raises(RuntimeError):
            c.consume("late")


class TestThinkingDisabled:
    def test_reasoning_fragments_dropped(self):
        c, events = classify([REASONING_SENTINEL + "secret", "visible"], thinking_enabled=False)
        assert events[0] == Content("")
        assert c.thinking == ""
        assert c.content == "visible"

    def test_inline_tags_pass_through(self):
        c, _ = classify(["<think>x</think>y"], thinking_enabled=False)
        assert c.content == "<think>x</think>y"


SOURCE = (
    "<think>Let me consider the </thinker> question. a<b and c>d.</think>"
    "The answer is <b>42</b>.<think></think> Done <think>more"
)


class TestSplitInvariance:
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8, 13, len(SOURCE)])
    def test_same_channels_for_any_split(self, size):
        reference, _ = classify([SOURCE])
        c, _ = classify(split_every(SOURCE, size))
        assert c.content == reference.content
        assert c.thinking == reference.thinking

    def test_round_trip_reconstructs_source(self):
        text = "pre<think>r1</think>mid<think>r2</think>post"
        c, events = classify(split_every(text, 4))
        assert channel_text(events, Content) == "premidpost"
        assert channel_text(events, Thinking) == "r1r2"


class TestPostProcessing:
    def test_strip_thinking_tags(self):
        assert strip_thinking_tags("<think>x</think> hello") == "hello"

    def test_strip_artifacts_relocates_reasoning(self):
        content, reasoning = strip_delimiter_artifacts("plan</think>answer")
        assert content == "answer"
        assert reasoning == "plan"

    def test_strip_artifacts_keeps_streamed_reasoning(self):
        content, reasoning = strip_delimiter_artifacts("a<think>b</think>c", "streamed")
        assert content == "ac"
        assert reasoning == "streamed"

    def test_stray_open_tag_removed(self):
        content, _ = strip_delimiter_artifacts("answer<think>")
        assert content == "answer"

    def test_clean_content_untouched(self):
        assert strip_delimiter_artifacts("  answer ", "r") == ("answer", "r")

    def test_split_reasoning(self):
        assert split_reasoning("<think>plan</think> Answer ") == ("plan", "Answer")

    def test_split_reasoning_several_blocks(self):
        assert split_reasoning("<think>a</think>x<think>b</think>y") == ("ab", "xy")

    def test_split_reasoning_plain_text(self):
        assert split_reasoning("just an answer") == ("", "just an answer")
