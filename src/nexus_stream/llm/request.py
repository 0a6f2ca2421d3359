"""Completion request/response types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    """Everything needed for a single completion call.  Immutable."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessage, ...]
    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=16384, gt=0)
    stream: bool = True

    @field_validator("messages")
    @classmethod
    def _non_empty(cls, v: tuple[ChatMessage, ...]) -> tuple[ChatMessage, ...]:
        if not v:
            raise ValueError("messages must not be empty")
        return v

    @classmethod
    def build(
        cls,
        messages: list[dict[str, str]],
        model: str,
        **kwargs: Any,
    ) -> CompletionRequest:
        """Convenience constructor from plain ``{"role", "content"}`` dicts."""
        return cls(
            messages=tuple(ChatMessage(**m) for m in messages),
            model=model,
            **kwargs,
        )

    def to_payload(self, stream: bool | None = None) -> dict[str, Any]:
        """Render the upstream ``/chat/completions`` body."""
        return {
            "model": self.model,
            "messages": [m.model_dump() for m in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream if stream is None else stream,
        }


@dataclass
class CompletionResponse:
    """Result of a non-streaming completion."""

    content: str = ""
    reasoning: str = ""
    model: str = ""
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0
