"""Pydantic v2 models for run transcript events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Common envelope fields shared by every transcript event."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(ge=0, description="Monotonic sequence number")


class RunStartEvent(_EventBase):
    """Emitted once at the start of an orchestration run."""

    type: Literal["run_start"] = "run_start"
    run_id: str = Field(description="Unique run identifier")
    name: str = Field(description="Run name")
    config_hash: str = Field(description="Hash of the resolved config")


class RunEndEvent(_EventBase):
    """Emitted once when a run ends."""

    type: Literal["run_end"] = "run_end"
    reason: Literal["complete", "cancelled", "error"] = Field(
        description="Why the run ended",
    )
    duration_ms: int = Field(description="Total run duration in milliseconds")
    succeeded: int = Field(default=0, description="Tasks that succeeded")
    failed: int = Field(default=0, description="Tasks that failed")


class TaskStartEvent(_EventBase):
    """Emitted when a task is submitted."""

    type: Literal["task_start"] = "task_start"
    task_id: str = Field(description="Task identifier")
    mode: str = Field(description="Execution mode the task runs under")
    prompt: str = Field(description="Prompt text (truncated)")


class TaskAttemptEvent(_EventBase):
    """Emitted when an attempt begins."""

    type: Literal["task_attempt"] = "task_attempt"
    task_id: str = Field(description="Task identifier")
    attempt: int = Field(ge=1, description="Attempt number (1-indexed)")


class TaskMessageEvent(_EventBase):
    """One message received from a task's subprocess."""

    type: Literal["task_message"] = "task_message"
    task_id: str = Field(description="Task identifier")
    kind: str = Field(description="Message kind")
    payload: dict[str, Any] = Field(description="Message payload")


class TaskDoneEvent(_EventBase):
    """Emitted when a task settles."""

    type: Literal["task_done"] = "task_done"
    task_id: str = Field(description="Task identifier")
    state: Literal["succeeded", "failed"] = Field(description="Terminal state")
    attempts: int = Field(ge=0, description="Attempts made")
    duration_ms: int = Field(description="Wall time in milliseconds")
    cost_usd: float | None = Field(default=None, description="Reported cost")


class ErrorEvent(_EventBase):
    """A failure encountered during the run."""

    type: Literal["error"] = "error"
    task_id: str | None = Field(
        default=None,
        description="Task that hit the error (null for run-level errors)",
    )
    error: str = Field(description="Error description")
    kind: str | None = Field(
        default=None,
        description="Failure kind: spawn, exit, result_error, timeout, ...",
    )
    retrying: bool = Field(description="Whether the task will be retried")


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


TranscriptEvent = Annotated[
    Annotated[RunStartEvent, Tag("run_start")]
    | Annotated[RunEndEvent, Tag("run_end")]
    | Annotated[TaskStartEvent, Tag("task_start")]
    | Annotated[TaskAttemptEvent, Tag("task_attempt")]
    | Annotated[TaskMessageEvent, Tag("task_message")]
    | Annotated[TaskDoneEvent, Tag("task_done")]
    | Annotated[ErrorEvent, Tag("error")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all transcript event types."""
