"""Exception taxonomy for the streaming layer and the orchestrator.

Only :class:`SpawnError`, :class:`SessionStateError`,
:class:`StreamConsumedError` and :class:`InvalidQueryError` are raised to
callers of the streaming layer.  Decode and protocol anomalies are absorbed
into ``unknown`` messages, and result/timeout/cancellation failures are
reported as :class:`~agentstream.orchestrator.models.TaskFailure` outcomes.
The remaining classes name those failure classes so they can be raised
explicitly by callers that prefer exceptions (see ``TaskOutcome.raise_for_failure``).
"""

from __future__ import annotations


class AgentStreamError(Exception):
    """Base class for every agentstream error."""


class SpawnError(AgentStreamError):
    """The executable could not be located or launched.

    ``transient`` is ``False`` when the executable is missing or not
    executable, ``True`` for resource hiccups (``EAGAIN``, ``ENOMEM``, ...).
    """

    def __init__(self, message: str, *, executable: str, transient: bool = False) -> None:
        super().__init__(message)
        self.executable = executable
        self.transient = transient


class DecodeError(AgentStreamError):
    """A stdout line was not a JSON object."""

    def __init__(self, message: str, line: str) -> None:
        super().__init__(message)
        self.line = line


class ProtocolError(AgentStreamError):
    """A record with a known discriminant is missing required fields."""


class ResultError(AgentStreamError):
    """The subprocess reported an unsuccessful terminal result."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class StreamTimeoutError(AgentStreamError):
    """An operation exceeded its configured deadline."""


class TaskCancelledError(AgentStreamError):
    """A task was cancelled by the caller."""


class SessionStateError(AgentStreamError):
    """A session was asked to make an invalid lifecycle transition."""


class StreamConsumedError(AgentStreamError):
    """A single-consumer stream was iterated a second time."""


class InvalidQueryError(AgentStreamError):
    """The query specification is malformed (empty prompt, bad arguments)."""
