"""Framed downstream events and the notification bus."""

from nexus_stream.events.bus import EventBus
from nexus_stream.events.framing import (
    EventName,
    FramedEvent,
    done_event,
    error_event,
    frame_classified,
    frame_narrative,
    frame_record,
    session_event,
)

__all__ = [
    "EventBus",
    "EventName",
    "FramedEvent",
    "done_event",
    "error_event",
    "frame_classified",
    "frame_narrative",
    "frame_record",
    "session_event",
]
