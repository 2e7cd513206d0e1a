"""agentstream — typed streaming and orchestration for command-line agents."""

from agentstream.config.models import OrchestratorConfig, QueryOptions
from agentstream.errors import (
    AgentStreamError,
    DecodeError,
    InvalidQueryError,
    ProtocolError,
    ResultError,
    SessionStateError,
    SpawnError,
    StreamConsumedError,
    StreamTimeoutError,
    TaskCancelledError,
)
from agentstream.orchestrator import (
    ExecutionMode,
    FailureKind,
    Orchestrator,
    PipelineOutcome,
    QuerySpec,
    SessionTable,
    TaskFailure,
    TaskOutcome,
    TaskState,
)
from agentstream.process import ProcessSession, SessionState
from agentstream.protocol import MessageKind, MessageModel
from agentstream.query import continue_conversation, query, resume
from agentstream.stream import MessageStream

__version__ = "0.1.0"

__all__ = [
    "AgentStreamError",
    "DecodeError",
    "ExecutionMode",
    "FailureKind",
    "InvalidQueryError",
    "MessageKind",
    "MessageModel",
    "MessageStream",
    "Orchestrator",
    "OrchestratorConfig",
    "PipelineOutcome",
    "ProcessSession",
    "ProtocolError",
    "QueryOptions",
    "QuerySpec",
    "ResultError",
    "SessionState",
    "SessionStateError",
    "SessionTable",
    "SpawnError",
    "StreamConsumedError",
    "StreamTimeoutError",
    "TaskCancelledError",
    "TaskFailure",
    "TaskOutcome",
    "TaskState",
    "__version__",
    "continue_conversation",
    "query",
    "resume",
]
