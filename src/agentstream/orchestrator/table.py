"""SessionTable — per-orchestrator registry of tasks and their live sessions."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from agentstream.errors import SessionStateError
from agentstream.orchestrator.models import (
    ExecutionMode,
    QuerySpec,
    TaskFailure,
    TaskOutcome,
    TaskState,
)
from agentstream.protocol.models import MessageModel
from agentstream.stream import MessageStream

_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.RUNNING, TaskState.FAILED}),
    TaskState.RUNNING: frozenset(
        {TaskState.SUCCEEDED, TaskState.FAILED, TaskState.RETRYING}
    ),
    TaskState.RETRYING: frozenset({TaskState.RUNNING, TaskState.FAILED}),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
}


@dataclass
class TaskEntry:
    """Mutable bookkeeping for one task while it is in flight."""

    task_id: str
    index: int
    spec: QuerySpec
    mode: ExecutionMode
    prompt: str = ""
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    stream: MessageStream | None = None
    runner: asyncio.Task[TaskOutcome] | None = None
    messages: list[MessageModel] = field(default_factory=list)
    history: list[TaskFailure] = field(default_factory=list)
    cost_usd: float | None = None
    session_id: str | None = None
    cancel_requested: bool = False
    outcome: TaskOutcome | None = None
    started_ns: int = field(default_factory=time.monotonic_ns)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic_ns() - self.started_ns) / 1_000_000)


class SessionTable:
    """Arena of :class:`TaskEntry` records keyed by task id.

    Each :class:`~agentstream.orchestrator.Orchestrator` owns exactly one
    table, so independent orchestrators never share bookkeeping.
    """

    def __init__(self, prefix: str = "task") -> None:
        self._prefix = prefix
        self._entries: dict[str, TaskEntry] = {}
        self._counter = itertools.count(1)

    def add(self, spec: QuerySpec, index: int, mode: ExecutionMode) -> TaskEntry:
        """Register a new pending task and return its entry."""
        seq = next(self._counter)
        task_id = f"{spec.name}-{seq}" if spec.name else f"{self._prefix}-{seq}"
        entry = TaskEntry(
            task_id=task_id, index=index, spec=spec, mode=mode, prompt=spec.prompt
        )
        self._entries[task_id] = entry
        return entry

    def get(self, task_id: str) -> TaskEntry:
        try:
            return self._entries[task_id]
        except KeyError:
            msg = f"Unknown task id '{task_id}'"
            raise KeyError(msg) from None

    def transition(self, task_id: str, state: TaskState) -> None:
        """Move a task to *state*, rejecting transitions the lifecycle forbids."""
        entry = self.get(task_id)
        if state not in _TRANSITIONS[entry.state]:
            msg = f"Task '{task_id}' cannot move from {entry.state} to {state}"
            raise SessionStateError(msg)
        entry.state = state

    def active(self) -> list[TaskEntry]:
        """Entries that have not reached a terminal state."""
        return [e for e in self._entries.values() if not e.is_terminal]

    def outcomes(self) -> list[TaskOutcome]:
        """Outcomes of every settled task, in registration order."""
        return [e.outcome for e in self._entries.values() if e.outcome is not None]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def __iter__(self) -> Iterator[TaskEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
