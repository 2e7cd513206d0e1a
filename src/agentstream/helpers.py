"""Formatting and error-reporting helpers shared by the stream and orchestrator."""

from __future__ import annotations

import logging

from agentstream.transcript.models import ErrorEvent
from agentstream.transcript.recorder import RunRecorder


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Return the last *max_lines* non-blank stderr lines, indented for display."""
    tail = [line for line in stderr_text.splitlines() if line.strip()][-max_lines:]
    return "\n  ".join(tail)


def truncate(text: str, limit: int = 200) -> str:
    """Shorten *text* to *limit* characters, marking the cut with an ellipsis."""
    return text if len(text) <= limit else text[: limit - 3] + "..."


def record_error(
    recorder: RunRecorder | None,
    task_id: str | None,
    error_msg: str,
    kind: str | None = None,
    retrying: bool = False,
    logger: logging.Logger | None = None,
) -> None:
    """Log *error_msg* and, when recording, append an ``error`` event.

    Failures that will be retried log at WARNING, final ones at ERROR.
    """
    if logger is not None:
        level = logging.WARNING if retrying else logging.ERROR
        logger.log(level, "%s: %s", task_id or "run", error_msg)
    if recorder is not None:
        recorder.record(
            ErrorEvent(
                ts="", seq=0, task_id=task_id, error=error_msg, kind=kind, retrying=retrying
            )
        )
