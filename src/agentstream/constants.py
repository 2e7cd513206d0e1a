"""Shared constants and type aliases for the agentstream runtime."""

from __future__ import annotations

from collections.abc import Callable, Mapping

#: Executable launched when a query does not name one.
DEFAULT_EXECUTABLE = "claude"

#: Seconds to wait after SIGTERM before SIGKILL.
DEFAULT_GRACE_PERIOD = 3.0

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
MAX_LINE_BYTES = 1_048_576

#: Bytes requested per stdout read.
READ_CHUNK_BYTES = 65_536

#: Maximum stderr bytes retained per session for diagnostics.
MAX_STDERR_BYTES = 65_536

#: Exit code recorded when a process had to be SIGKILLed without reporting one.
FORCED_KILL_EXIT_CODE = -9

#: Callback supplying credential environment variables before spawn.
EnvProvider = Callable[[], Mapping[str, str]]
