"""Pydantic v2 models describing orchestration inputs and outcomes."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentstream.config.models import QueryOptions
from agentstream.errors import (
    AgentStreamError,
    InvalidQueryError,
    ResultError,
    SpawnError,
    StreamTimeoutError,
    TaskCancelledError,
)
from agentstream.protocol.models import MessageKind, MessageModel


class ExecutionMode(StrEnum):
    PARALLEL = "parallel"
    PIPELINE = "pipeline"
    RETRY = "retry"


class TaskState(StrEnum):
    """Lifecycle of one orchestration task.

    ``pending -> running -> {succeeded | failed | retrying}``; ``retrying``
    loops back to ``running`` until the attempt bound, then ``failed``.
    """

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


class FailureKind(StrEnum):
    SPAWN = "spawn"
    EXIT = "exit"
    RESULT_ERROR = "result_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INVALID_QUERY = "invalid_query"
    INTERNAL = "internal"


class QuerySpec(BaseModel):
    """A prompt plus the options it runs with."""

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(description="Prompt text sent to the agent")
    options: QueryOptions = Field(
        default_factory=QueryOptions,
        description="Options for this query",
    )
    name: str | None = Field(default=None, description="Optional task label")


class TaskFailure(BaseModel):
    """Structured description of why a task (or one attempt of it) failed."""

    kind: FailureKind
    message: str
    exit_code: int | None = None
    stderr: str = ""
    result_code: str | None = None
    partial_messages: list[MessageModel] = Field(default_factory=list)
    transient: bool = False

    def to_exception(self) -> AgentStreamError:
        """Map the failure onto the matching exception class."""
        if self.kind is FailureKind.SPAWN:
            return SpawnError(self.message, executable="", transient=self.transient)
        if self.kind is FailureKind.TIMEOUT:
            return StreamTimeoutError(self.message)
        if self.kind is FailureKind.CANCELLED:
            return TaskCancelledError(self.message)
        if self.kind is FailureKind.INVALID_QUERY:
            return InvalidQueryError(self.message)
        if self.kind is FailureKind.INTERNAL:
            return AgentStreamError(self.message)
        return ResultError(self.message, code=self.result_code)


class TaskOutcome(BaseModel):
    """Terminal result of one orchestration task."""

    task_id: str
    index: int
    prompt: str
    state: TaskState
    messages: list[MessageModel] = Field(default_factory=list)
    failure: TaskFailure | None = None
    attempts: int = 0
    duration_ms: int = 0
    cost_usd: float | None = None
    session_id: str | None = None
    history: list[TaskFailure] = Field(
        default_factory=list,
        description="Failures of earlier attempts, oldest first",
    )

    @property
    def succeeded(self) -> bool:
        return self.state is TaskState.SUCCEEDED

    @property
    def result(self) -> MessageModel | None:
        """The terminal ``result`` message, if the agent sent one."""
        for message in reversed(self.messages):
            if message.is_final:
                return message
        return None

    @property
    def text(self) -> str:
        """Assistant text of the run, falling back to the result text."""
        return messages_text(self.messages)

    def raise_for_failure(self) -> None:
        """Raise the failure as an exception; no-op for succeeded tasks."""
        if self.failure is not None:
            raise self.failure.to_exception()


class PipelineOutcome(BaseModel):
    """Outcome of a sequential pipeline run."""

    stages: list[TaskOutcome] = Field(default_factory=list)
    failed_stage: int | None = Field(
        default=None,
        description="Index of the stage that failed, if any",
    )
    failure: TaskFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_stage is None

    @property
    def final(self) -> TaskOutcome | None:
        return self.stages[-1] if self.stages else None


def messages_text(messages: list[MessageModel]) -> str:
    """Join the text of every assistant message.

    Falls back to the ``result`` field of the terminal message when no
    assistant text is present.
    """
    parts = [
        text
        for message in messages
        if message.kind is MessageKind.ASSISTANT
        and (text := _content_text(message.payload.get("message")))
    ]
    if parts:
        return "\n".join(parts)
    for message in reversed(messages):
        result = message.payload.get("result") if message.is_final else None
        if isinstance(result, str):
            return result
    return ""


def _content_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and isinstance(block.get("text"), str)
    ]
    return " ".join(texts)
