"""agentstream init — scaffold a run file."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "agentstream.yaml"
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# agentstream run configuration
version: "1"

# Run name, used in transcript filenames
name: my-run

# Execution mode: parallel (default), pipeline, or retry (single task)
mode: parallel

# Options applied to every task (each task may override them)
defaults:
  max_turns: 3
  # model: sonnet
  # allowed_tools: [Read, Grep]
  # permission_mode: plan

orchestrator:
  max_concurrent: 4     # unbounded when omitted
  timeout: 300          # seconds per attempt
  # max_attempts: 3     # retry mode only
  # backoff_base: 1.0
  # backoff_factor: 2.0
  # fail_fast: false
  # stop_on_error: true  # pipeline mode: keep going after a failed stage when false

tasks:
  - name: summary
    prompt: Summarize the README in this directory in three sentences.

  - name: todo-scan
    prompt: List every TODO comment in the source tree with its file path.
    options:
      allowed_tools: [Grep, Read]

  # Prompts can also live in files next to this config:
  # - prompt: ./prompts/review.md
"""

TEMPLATE_ENV_EXAMPLE = """\
# Environment passed to every agent subprocess.
# Copy this file to .env and fill in your keys.

ANTHROPIC_API_KEY=
"""


NEXT_STEPS = (
    f"Edit {CONFIG_FILENAME} to describe your tasks",
    f"Copy {ENV_EXAMPLE_FILENAME} to .env and add your API key",
    "Run `agentstream run` to execute them",
)


def _write(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {path.name}: {exc}") from exc
    click.echo(f"  Created {path.name}")


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing agentstream.yaml and .env.example.",
)
def init(force: bool) -> None:
    """Scaffold agentstream.yaml in the current directory."""
    config_path = Path.cwd() / CONFIG_FILENAME
    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )
    _write(config_path, TEMPLATE_YAML)

    # An existing .env.example may hold the user's own keys.
    env_example_path = config_path.with_name(ENV_EXAMPLE_FILENAME)
    if env_example_path.exists() and not force:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")
    else:
        _write(env_example_path, TEMPLATE_ENV_EXAMPLE)

    click.echo("\nNext steps:")
    for number, step in enumerate(NEXT_STEPS, start=1):
        click.echo(f"  {number}. {step}")
