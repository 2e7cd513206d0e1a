"""Subprocess ownership — spawning, stdio pipes and termination."""

from agentstream.process.env import build_env
from agentstream.process.session import ProcessSession, SessionState

__all__ = ["ProcessSession", "SessionState", "build_env"]
