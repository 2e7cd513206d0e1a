"""Shared fixtures: a scriptable stand-in for the agent executable."""

from __future__ import annotations

import sys

import pytest

from agentstream.config.models import QueryOptions

#: A tiny agent that speaks stream-json.  Behaviour is picked by the prompt
#: (always the last argv entry):
#:
#: * ``crash``              : init, then exit 3 with a stderr message
#: * ``sleep``              : init, then hang
#: * ``max-turns``          : init, assistant, result error_max_turns, exit 1
#: * ``during-execution``   : init, result error_during_execution, exit 1
#: * ``garbage``            : a non-JSON line between valid records
#: * ``flaky <file> <n>``   : exit 1 for the first *n* runs (counted in *file*)
#: * anything else          : init, assistant echoing the prompt, success
FAKE_AGENT = r"""
import json
import sys
import time

prompt = sys.argv[-1]


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


emit({"type": "system", "subtype": "init", "session_id": "sess-1", "args": sys.argv[1:-1]})

if prompt == "crash":
    sys.stderr.write("fatal: something broke\n")
    sys.exit(3)

if prompt == "sleep":
    time.sleep(60)

if prompt.startswith("flaky "):
    _, path, failures = prompt.split(" ", 2)
    try:
        with open(path) as fh:
            count = int(fh.read() or "0")
    except FileNotFoundError:
        count = 0
    with open(path, "w") as fh:
        fh.write(str(count + 1))
    if count < int(failures):
        sys.stderr.write("transient failure\n")
        sys.exit(1)

if prompt == "garbage":
    sys.stdout.write("not json at all\n")

if prompt == "during-execution":
    emit({"type": "result", "subtype": "error_during_execution", "is_error": True})
    sys.exit(1)

emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "echo: " + prompt}]}})

if prompt == "max-turns":
    emit({"type": "result", "subtype": "error_max_turns", "is_error": True})
    sys.exit(1)

emit({
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "total_cost_usd": 0.001,
    "session_id": "sess-1",
    "result": "echo: " + prompt,
})
"""


@pytest.fixture()
def agent_options() -> QueryOptions:
    """QueryOptions that launch the fake agent instead of the real CLI."""
    return QueryOptions(
        executable=sys.executable,
        executable_args=["-c", FAKE_AGENT],
        grace_period=1.0,
    )
