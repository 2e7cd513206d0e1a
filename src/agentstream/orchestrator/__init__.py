"""Execution orchestrator — parallel, pipeline and retry modes."""

from agentstream.config.models import OrchestratorConfig
from agentstream.orchestrator.models import (
    ExecutionMode,
    FailureKind,
    PipelineOutcome,
    QuerySpec,
    TaskFailure,
    TaskOutcome,
    TaskState,
    messages_text,
)
from agentstream.orchestrator.orchestrator import Orchestrator, StreamFactory
from agentstream.orchestrator.table import SessionTable, TaskEntry

__all__ = [
    "ExecutionMode",
    "FailureKind",
    "Orchestrator",
    "OrchestratorConfig",
    "PipelineOutcome",
    "QuerySpec",
    "SessionTable",
    "StreamFactory",
    "TaskEntry",
    "TaskFailure",
    "TaskOutcome",
    "TaskState",
    "messages_text",
]
