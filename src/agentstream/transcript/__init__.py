"""Run transcripts: event models, the JSONL recorder and its reader."""

from agentstream.transcript.models import (
    ErrorEvent,
    RunEndEvent,
    RunStartEvent,
    TaskAttemptEvent,
    TaskDoneEvent,
    TaskMessageEvent,
    TaskStartEvent,
    TranscriptEvent,
)
from agentstream.transcript.recorder import EndReason, RunRecorder, read_transcript

__all__ = [
    "EndReason",
    "ErrorEvent",
    "RunEndEvent",
    "RunRecorder",
    "RunStartEvent",
    "TaskAttemptEvent",
    "TaskDoneEvent",
    "TaskMessageEvent",
    "TaskStartEvent",
    "TranscriptEvent",
    "read_transcript",
]
