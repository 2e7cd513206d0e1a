"""Configuration models and parser for agentstream.yaml."""

from agentstream.config.models import (
    OrchestratorConfig,
    QueryOptions,
    RunConfig,
    TaskConfig,
)
from agentstream.config.parser import ConfigError, load_config

__all__ = [
    "ConfigError",
    "OrchestratorConfig",
    "QueryOptions",
    "RunConfig",
    "TaskConfig",
    "load_config",
]
