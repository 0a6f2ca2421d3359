"""Incremental parsers for streamed model output."""

from nexus_stream.parsing.classifier import (
    THINK_CLOSE,
    THINK_OPEN,
    DualChannelClassifier,
    pending_marker_suffix,
    split_reasoning,
    strip_delimiter_artifacts,
    strip_thinking_tags,
)
from nexus_stream.parsing.decoder import decode_record_payload, extract_json_text
from nexus_stream.parsing.extractor import (
    NARRATIVE_MARKER,
    RECORD_MARKER,
    StructuredStreamExtractor,
)

__all__ = [
    "NARRATIVE_MARKER",
    "RECORD_MARKER",
    "THINK_CLOSE",
    "THINK_OPEN",
    "DualChannelClassifier",
    "StructuredStreamExtractor",
    "decode_record_payload",
    "extract_json_text",
    "pending_marker_suffix",
    "split_reasoning",
    "strip_delimiter_artifacts",
    "strip_thinking_tags",
]
