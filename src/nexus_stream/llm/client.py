"""Async OpenAI-compatible completion client.

Uses ``httpx.AsyncClient`` and exposes ``async def complete()`` and the
streaming ``stream()`` async generator, which yields opaque text fragments
in upstream order.  Reasoning deltas (``delta.reasoning_content``) are
forwarded prefixed with ``REASONING_SENTINEL``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, TypeVar

import httpx

from nexus_stream.config import ProviderSpec, StreamSpec
from nexus_stream.errors import (
    AuthError,
    ConfigurationError,
    NexusStreamError,
    StreamTimeoutError,
    TransportError,
    UpstreamProtocolError,
)
from nexus_stream.parsing.classifier import split_reasoning
from nexus_stream.types import REASONING_SENTINEL, Fragment

from .request import CompletionRequest, CompletionResponse

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)
_AUTH_STATUS = (401, 403)
_PROGRESS_LOG_EVERY = 50


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def parse_event_line(line: str) -> list[Fragment] | None:
    """Turn one line of an event stream into zero or more fragments.

    Returns ``None`` for the ``[DONE]`` terminator.  Raises
    ``UpstreamProtocolError`` when a ``data:`` payload is not valid JSON
    or has an unexpected shape.
    """
    if not line.startswith("data:"):
        return []
    data = line[5:].strip()
    if not data:
        return []
    if data == "[DONE]":
        return None

    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise UpstreamProtocolError(
            f"malformed stream payload: {data[:80]!r}",
        ) from e
    if not isinstance(obj, dict):
        raise UpstreamProtocolError(f"unexpected stream payload: {data[:80]!r}")

    choices = obj.get("choices")
    if not choices:
        # usage-only and keep-alive chunks carry no text
        return []
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise UpstreamProtocolError(f"unexpected choices shape: {data[:80]!r}")

    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise UpstreamProtocolError(f"unexpected delta shape: {data[:80]!r}")
    fragments: list[Fragment] = []
    reasoning = delta.get("reasoning_content")
    if isinstance(reasoning, str) and reasoning:
        fragments.append(REASONING_SENTINEL + reasoning)
    content = delta.get("content")
    if isinstance(content, str) and content:
        fragments.append(content)
    return fragments


def _status_error(status: int, body: str) -> NexusStreamError:
    snippet = body[:300]
    if status in _AUTH_STATUS:
        return AuthError(f"provider rejected credentials ({status}): {snippet}")
    return TransportError(
        f"provider returned {status}: {snippet}",
        retryable=status in _RETRYABLE_STATUS,
        status_code=status,
    )


class _Deadline:
    """Global time budget shared by every await of one call."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    @property
    def remaining(self) -> float:
        return self._expires - time.monotonic()

    def _expired(self) -> StreamTimeoutError:
        return StreamTimeoutError(
            f"completion exceeded deadline of {self.seconds:g}s",
            deadline=self.seconds,
        )

    async def run(self, aw: Awaitable[T]) -> T:
        remaining = self.remaining
        if remaining <= 0:
            close = getattr(aw, "close", None)
            if close is not None:
                close()
            raise self._expired()
        try:
            async with asyncio.timeout(remaining):
                return await aw
        except TimeoutError as e:
            raise self._expired() from e

    async def sleep(self, delay: float) -> None:
        if delay >= self.remaining:
            raise self._expired()
        await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AsyncCompletionClient:
    """Async client for an OpenAI-compatible ``/chat/completions`` API.

    Parameters
    ----------
    provider:
        Base URL, credentials and extra body params.
    spec:
        Deadline, per-phase timeouts and retry budget.
    transport:
        Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        provider: ProviderSpec,
        spec: StreamSpec | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not provider.is_available:
            raise ConfigurationError(
                "completion provider is not configured: API key is missing "
                f"(set provider.api_key or ${provider.api_key_env})",
            )
        self.provider = provider
        self.spec = spec or StreamSpec()

        headers = {
            "Authorization": f"Bearer {provider.resolved_api_key()}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=provider.url,
            headers=headers,
            timeout=httpx.Timeout(
                self.spec.read_timeout, connect=self.spec.connect_timeout,
            ),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        payload = request.to_payload(stream=stream)
        if self.provider.extra_params:
            payload.update(self.provider.extra_params)
        return payload

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff: base, 2*base, 4*base, ..."""
        return self.spec.backoff_base * (2 ** attempt)

    async def _retry_or_raise(
        self, err: NexusStreamError, attempt: int, deadline: _Deadline,
    ) -> None:
        if not err.retryable or attempt >= self.spec.max_retries:
            raise err
        delay = self.backoff_delay(attempt)
        _logger.warning(
            "Completion call failed (attempt %d/%d): %s; retrying in %.1fs",
            attempt + 1, self.spec.max_retries + 1, err, delay,
        )
        await deadline.sleep(delay)

    async def _send(
        self, payload: dict[str, Any], stream: bool,
    ) -> httpx.Response:
        """Issue the POST; map transport and status failures to our taxonomy."""
        headers = {"Accept": "text/event-stream"} if stream else None
        req = self._client.build_request(
            "POST", "/chat/completions", json=payload, headers=headers,
        )
        try:
            resp = await self._client.send(req, stream=stream)
        except httpx.HTTPError as e:
            raise TransportError(f"connection failed: {e}") from e

        if resp.status_code >= 400:
            try:
                body = (await resp.aread()).decode(errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await resp.aclose()
            raise _status_error(resp.status_code, body)
        return resp

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[Fragment]:
        """Stream a completion.  Yields fragments in upstream order.

        Pre-stream failures are retried with exponential backoff (auth and
        other 4xx failures excepted).  Once a fragment has been yielded
        no retry happens: a later failure raises ``TransportError`` with
        ``mid_stream=True``.  ``StreamTimeoutError`` is raised when the
        global deadline passes.
        """
        payload = self._payload(request, stream=True)
        deadline = _Deadline(self.spec.timeout)
        start = time.monotonic()
        delivered = 0
        skipped = 0

        _logger.info(
            "Starting stream: model=%s, messages=%d",
            request.model, len(request.messages),
        )

        for attempt in range(self.spec.max_retries + 1):
            try:
                resp = await deadline.run(self._send(payload, stream=True))
            except NexusStreamError as e:
                await self._retry_or_raise(e, attempt, deadline)
                continue

            try:
                lines = resp.aiter_lines()
                while True:
                    try:
                        line = await deadline.run(anext(lines))
                    except StopAsyncIteration:
                        break
                    try:
                        fragments = parse_event_line(line)
                    except UpstreamProtocolError as e:
                        skipped += 1
                        _logger.debug("Skipping stream payload: %s", e)
                        continue
                    if fragments is None:
                        break
                    for fragment in fragments:
                        delivered += 1
                        if delivered == 1:
                            _logger.info(
                                "First fragment after %.0fms",
                                (time.monotonic() - start) * 1000,
                            )
                        elif delivered % _PROGRESS_LOG_EVERY == 0:
                            _logger.debug("Stream progress: %d fragments", delivered)
                        yield fragment
            except httpx.HTTPError as e:
                err = TransportError(
                    f"stream interrupted after {delivered} fragments: {e}",
                    mid_stream=delivered > 0,
                )
                if delivered:
                    _logger.error("%s", err)
                    raise err from e
                await self._retry_or_raise(err, attempt, deadline)
                continue
            finally:
                await resp.aclose()

            _logger.info(
                "Stream completed: %d fragments (%d skipped) in %.0fms",
                delivered, skipped, (time.monotonic() - start) * 1000,
            )
            return

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send a non-streaming completion request, with the same retry policy."""
        payload = self._payload(request, stream=False)
        deadline = _Deadline(self.spec.timeout)
        start = time.monotonic()

        for attempt in range(self.spec.max_retries + 1):
            try:
                resp = await deadline.run(self._send(payload, stream=False))
                break
            except NexusStreamError as e:
                await self._retry_or_raise(e, attempt, deadline)
        else:
            raise TransportError("exhausted retries", retryable=False)

        latency = (time.monotonic() - start) * 1000
        try:
            data = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UpstreamProtocolError("invalid JSON response") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise UpstreamProtocolError("no choices in completion response")
        choice = choices[0] if isinstance(choices, list) else None
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise UpstreamProtocolError("unexpected completion message shape")
        thinking, content = split_reasoning(message.get("content") or "")
        reasoning = message.get("reasoning_content") or thinking

        _logger.info(
            "Completion received in %.0fms, length=%d", latency, len(content),
        )
        return CompletionResponse(
            content=content,
            reasoning=reasoning,
            model=data.get("model", request.model),
            finish_reason=choice.get("finish_reason", "") or "",
            usage=data.get("usage") or {},
            latency_ms=latency,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncCompletionClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
