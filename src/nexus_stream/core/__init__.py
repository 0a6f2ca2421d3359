"""Session orchestration: per-session state, pipelines and finalization."""

from nexus_stream.core.finalizer import FinalizeReport, SessionFinalizer
from nexus_stream.core.pipeline import ChatPipeline, RoadmapPipeline
from nexus_stream.core.session import SessionMode, StreamSession

__all__ = [
    "ChatPipeline",
    "FinalizeReport",
    "RoadmapPipeline",
    "SessionFinalizer",
    "SessionMode",
    "StreamSession",
]
