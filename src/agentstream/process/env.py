"""Environment construction for agent subprocesses."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping

from agentstream.constants import EnvProvider

#: Max V8 heap size (MB) for Node.js CLI subprocesses (e.g. Claude CLI).
#: Prevents a single agent from OOM-killing the entire process tree.
NODE_HEAP_LIMIT_MB = 2048


def build_env(
    overrides: Mapping[str, str] | None = None,
    provider: EnvProvider | None = None,
    strip: Iterable[str] = (),
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment for one subprocess.

    Layers, later wins: *base* (defaults to ``os.environ``) minus the
    *strip* keys, then the credential *provider*'s variables, then
    *overrides*.  ``NODE_OPTIONS`` gets a heap cap unless one is present.
    """
    source = os.environ if base is None else base
    stripped = set(strip)
    env = {k: v for k, v in source.items() if k not in stripped}

    if provider is not None:
        env.update(provider())
    if overrides:
        env.update(overrides)

    node_opts = env.get("NODE_OPTIONS", "")
    if "--max-old-space-size" not in node_opts:
        separator = " " if node_opts else ""
        heap_flag = f"--max-old-space-size={NODE_HEAP_LIMIT_MB}"
        env["NODE_OPTIONS"] = f"{node_opts}{separator}{heap_flag}"
    return env
