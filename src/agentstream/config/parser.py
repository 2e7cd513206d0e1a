"""Read agentstream.yaml run files into validated RunConfig objects."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from agentstream.config.models import RunConfig

DEFAULT_CONFIG_NAME = "agentstream.yaml"

#: Prompts starting with this prefix name a file relative to the run file.
PROMPT_FILE_PREFIX = "./"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> RunConfig:
    """Load and validate a run file.

    When *path* is None the run file is looked up as ``agentstream.yaml``
    in the current directory.  A ``.env`` next to the run file is loaded
    into the process environment before validation, so agent subprocesses
    inherit the keys it defines.

    Raises:
        ConfigError: On a missing file, bad YAML, a bad prompt file
            reference, or a validation failure.
    """
    run_file = _locate(path)
    raw = _parse(run_file)
    project_dir = run_file.parent.resolve()
    for index, task in enumerate(raw.get("tasks") or []):
        if isinstance(task, dict):
            _inline_prompt_file(task, index, project_dir)

    env_file = project_dir / ".env"
    if env_file.is_file():
        load_dotenv(env_file)

    try:
        return RunConfig.model_validate(raw)
    except ValidationError as exc:
        msg = "Config validation failed:\n" + _describe_errors(exc)
        raise ConfigError(msg) from exc


def _locate(path: Path | None) -> Path:
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        if candidate.is_file():
            return candidate
        msg = (
            f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}. "
            "Run `agentstream init` to create one."
        )
        raise ConfigError(msg)

    candidate = Path(path)
    if not candidate.is_file():
        msg = f"Config file not found: {candidate}"
        raise ConfigError(msg)
    return candidate


def _parse(run_file: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(run_file.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark else ""
        msg = f"Invalid YAML in {run_file.name}{where}"
        raise ConfigError(msg) from exc

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {run_file.name}, got {type(data).__name__}"
        raise ConfigError(msg)
    return data


def _inline_prompt_file(task: dict[str, Any], index: int, project_dir: Path) -> None:
    """Replace a ``./file`` prompt with the file's stripped contents."""
    prompt = task.get("prompt")
    if not isinstance(prompt, str) or not prompt.startswith(PROMPT_FILE_PREFIX):
        return
    # A prompt with spaces or several lines is prose, not a path.
    if any(ch.isspace() for ch in prompt):
        return

    label = task.get("name") or f"#{index + 1}"
    prompt_file = (project_dir / prompt).resolve()
    if not prompt_file.is_relative_to(project_dir):
        msg = f"Prompt file for task {label} escapes project directory: {prompt}"
        raise ConfigError(msg)
    if not prompt_file.is_file():
        msg = f"Prompt file not found for task {label}: {prompt}"
        raise ConfigError(msg)
    task["prompt"] = prompt_file.read_text(encoding="utf-8").strip()


def _describe_errors(exc: ValidationError) -> str:
    lines: list[str] = []
    for err in exc.errors():
        where = " → ".join(str(part) for part in err["loc"]) or "(root)"
        if err["type"] == "missing":
            detail = "This field is required"
        elif err["msg"].lower().startswith("input should be"):
            detail = f"Invalid value: {err['msg']}"
        else:
            detail = err["msg"]
        lines.append(f"  {where}: {detail}")
    return "\n".join(lines)
