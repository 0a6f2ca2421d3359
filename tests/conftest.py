"""Shared fixtures: fake provider wire traffic and in-memory collaborators."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from nexus_stream.config import ProviderSpec, StreamSpec
from nexus_stream.llm import AsyncCompletionClient


def sse_line(delta: dict[str, Any]) -> bytes:
    chunk = {"choices": [{"index": 0, "delta": delta}]}
    return f"data: {json.dumps(chunk)}\n\n".encode()


def sse_body(*deltas: dict[str, Any], done: bool = True) -> bytes:
    """An OpenAI-style event stream carrying *deltas*."""
    body = b"".join(sse_line(d) for d in deltas)
    if done:
        body += b"data: [DONE]\n\n"
    return body


def content_deltas(*parts: str) -> list[dict[str, Any]]:
    return [{"content": p} for p in parts]


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered chunk by chunk, optionally failing or stalling."""

    def __init__(
        self,
        chunks: list[bytes],
        error: Exception | None = None,
        stall: float = 0.0,
    ):
        self.chunks = chunks
        self.error = error
        self.stall = stall
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeProvider:
    """Scripted ``/chat/completions`` endpoint for ``httpx.MockTransport``.

    Each entry of *script* answers one call: an ``httpx.Response``, an
    exception to raise, or raw SSE bytes.
    """

    def __init__(self, *script: Any):
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, bytes):
            return httpx.Response(
                200, content=step, headers={"content-type": "text/event-stream"},
            )
        return step

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def provider() -> ProviderSpec:
    return ProviderSpec(url="http://test/v1", api_key="test-key")


@pytest.fixture
def fast_spec() -> StreamSpec:
    return StreamSpec(timeout=5, max_retries=2, backoff_base=0)


@pytest.fixture
def make_client(provider, fast_spec):
    def _make(fake: FakeProvider, spec: StreamSpec | None = None) -> AsyncCompletionClient:
        return AsyncCompletionClient(provider, spec or fast_spec, transport=fake.transport())
    return _make
