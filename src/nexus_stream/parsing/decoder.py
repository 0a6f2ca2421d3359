"""Decoding of structured record payloads embedded in model output."""

from __future__ import annotations

import json
import re
from typing import Any

from nexus_stream.errors import DecodeError

_FENCED = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


def extract_json_text(text: str) -> str:
    """Best-effort isolation of a JSON object from model output.

    A fenced code block wins over surrounding prose.  Inside it, the
    object starting at the first ``{`` is taken up to where it parses
    complete; if it does not parse, the span up to the last ``}`` is
    returned so the caller sees the decode error.
    """
    text = text.strip()
    match = _FENCED.search(text)
    if match:
        text = match.group(1).strip()

    start = text.find("{")
    if start == -1:
        return text
    try:
        _, end = _DECODER.raw_decode(text, start)
    except json.JSONDecodeError:
        end = text.rfind("}") + 1
        if end <= start:
            return text
    return text[start:end]


def decode_record_payload(raw: str) -> dict[str, Any]:
    """Decode one record payload into a JSON object.

    Raises
    ------
    DecodeError
        If no JSON object can be recovered from *raw*.
    """
    candidate = extract_json_text(raw)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid record JSON: {e}", raw=raw) from e
    if not isinstance(data, dict):
        raise DecodeError(
            f"record payload must be an object, got {type(data).__name__}",
            raw=raw,
        )
    return data
