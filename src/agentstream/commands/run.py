"""agentstream run — execute the tasks of a run file."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from pathlib import Path

import click

from agentstream.config.models import RunConfig
from agentstream.config.parser import ConfigError, load_config
from agentstream.errors import InvalidQueryError
from agentstream.helpers import format_stderr_preview, truncate
from agentstream.orchestrator.models import (
    ExecutionMode,
    FailureKind,
    QuerySpec,
    TaskOutcome,
)
from agentstream.orchestrator.orchestrator import Orchestrator
from agentstream.transcript.recorder import RunRecorder

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExecutionMode]),
    default=None,
    help="Override the execution mode from the run file.",
)
@click.option(
    "--record",
    is_flag=True,
    help="Write a JSONL transcript to ./runs/.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def run(
    config_file: str | None,
    mode: str | None,
    record: bool,
    verbose: bool,
) -> None:
    """Run every task in agentstream.yaml and report the outcomes."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    selected = ExecutionMode(mode or config.mode)
    if selected is ExecutionMode.RETRY and len(config.tasks) != 1:
        click.echo(
            f"Error: mode 'retry' runs exactly one task, got {len(config.tasks)}",
            err=True,
        )
        raise SystemExit(1)

    outcomes = asyncio.run(_run_tasks(config, selected, record, verbose))
    failed = [o for o in outcomes if not o.succeeded]
    if failed or len(outcomes) < len(config.tasks):
        raise SystemExit(1)


async def _run_tasks(
    config: RunConfig,
    mode: ExecutionMode,
    record: bool,
    verbose: bool,
) -> list[TaskOutcome]:
    """Build the orchestrator, run the tasks and print one line per outcome."""
    recorder: RunRecorder | None = None
    if record:
        config_hash = hashlib.sha256(config.model_dump_json().encode()).hexdigest()[:16]
        recorder = RunRecorder(
            name=_UNSAFE_NAME_RE.sub("-", config.name).strip("-") or "run",
            config_hash=config_hash,
            record_messages=verbose,
        )

    specs = [
        QuerySpec(prompt=task.prompt, name=task.name, options=config.options_for(task))
        for task in config.tasks
    ]
    orchestrator = Orchestrator(config.orchestrator, recorder=recorder)

    click.echo(
        f"Running {len(specs)} task(s) in {mode.value} mode"
        + (f" — recording to {recorder.run_file}" if recorder else "")
    )

    reason = "complete"
    outcomes: list[TaskOutcome] = []
    try:
        outcomes = await orchestrator.run(specs, mode)
    except InvalidQueryError as exc:
        reason = "error"
        click.echo(f"Error: {exc}", err=True)
    except asyncio.CancelledError:
        reason = "cancelled"
        await orchestrator.cancel_all()
        raise
    finally:
        if recorder is not None:
            succeeded = sum(1 for o in outcomes if o.succeeded)
            recorder.end(reason, succeeded=succeeded, failed=len(outcomes) - succeeded)

    for outcome in outcomes:
        _print_outcome(outcome)
    if mode is ExecutionMode.PIPELINE and len(outcomes) < len(specs):
        skipped = len(specs) - len(outcomes)
        click.echo(click.style(f"  {skipped} later stage(s) not run", dim=True))
    return outcomes


def _print_outcome(outcome: TaskOutcome) -> None:
    label = f"[{outcome.index}] {outcome.task_id}"
    stats = f"{outcome.attempts} attempt(s), {outcome.duration_ms}ms"
    if outcome.cost_usd is not None:
        stats += f", ${outcome.cost_usd:.4f}"

    if outcome.succeeded:
        click.echo(click.style(f"  ✓ {label}", fg="green") + f" ({stats})")
        text = outcome.text
        if text:
            click.echo(f"    {truncate(' '.join(text.split()), 120)}")
        return

    failure = outcome.failure
    kind = failure.kind.value if failure else "failed"
    click.echo(click.style(f"  ✗ {label} [{kind}]", fg="red") + f" ({stats})")
    if failure is not None:
        click.echo(f"    {failure.message}")
        preview = format_stderr_preview(failure.stderr)
        if preview and failure.kind is not FailureKind.EXIT:
            click.echo(click.style(f"    stderr: {preview}", dim=True))
