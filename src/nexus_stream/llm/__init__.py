"""Upstream completion client for nexus-stream."""

from nexus_stream.llm.client import AsyncCompletionClient, parse_event_line
from nexus_stream.llm.request import ChatMessage, CompletionRequest, CompletionResponse

__all__ = [
    "AsyncCompletionClient",
    "ChatMessage",
    "CompletionRequest",
    "CompletionResponse",
    "parse_event_line",
]
