"""agentstream ask — stream one prompt's messages to the console."""

from __future__ import annotations

import asyncio
import json
import logging

import click

from agentstream.config.models import QueryOptions
from agentstream.errors import AgentStreamError
from agentstream.helpers import format_stderr_preview, truncate
from agentstream.orchestrator.models import messages_text
from agentstream.protocol.models import MessageKind, MessageModel
from agentstream.query import continue_conversation, query, resume

_KIND_COLORS = {
    MessageKind.SYSTEM_INIT: "cyan",
    MessageKind.ASSISTANT: "green",
    MessageKind.TOOL_RESULT: "blue",
    MessageKind.RESULT_SUCCESS: "green",
    MessageKind.RESULT_ERROR: "red",
    MessageKind.UNKNOWN: "yellow",
}


@click.command()
@click.argument("prompt")
@click.option("--max-turns", type=int, default=None, help="Maximum conversation turns.")
@click.option("--model", default=None, help="Model identifier passed to the agent.")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Working directory.")
@click.option(
    "--executable",
    default=None,
    help="Agent executable (default: claude).",
)
@click.option("--resume", "resume_id", default=None, help="Session id to resume.")
@click.option(
    "--continue",
    "continue_last",
    is_flag=True,
    help="Continue the most recent conversation.",
)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON lines.")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def ask(
    prompt: str,
    max_turns: int | None,
    model: str | None,
    cwd: str | None,
    executable: str | None,
    resume_id: str | None,
    continue_last: bool,
    as_json: bool,
    verbose: bool,
) -> None:
    """Send PROMPT to the agent and print each message as it arrives."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if resume_id and continue_last:
        raise click.UsageError("--resume and --continue are mutually exclusive.")

    fields: dict[str, object] = {"max_turns": max_turns, "model": model, "cwd": cwd}
    if executable:
        fields["executable"] = executable
    options = QueryOptions.model_validate(
        {k: v for k, v in fields.items() if v is not None}
    )

    try:
        exit_code = asyncio.run(
            _stream(prompt, options, resume_id, continue_last, as_json)
        )
    except AgentStreamError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    if exit_code:
        raise SystemExit(1)


async def _stream(
    prompt: str,
    options: QueryOptions,
    resume_id: str | None,
    continue_last: bool,
    as_json: bool,
) -> int:
    """Print every message; returns 1 on an unsuccessful run, else 0."""
    if resume_id:
        stream = resume(resume_id, prompt, options, name="ask")
    elif continue_last:
        stream = continue_conversation(prompt, options, name="ask")
    else:
        stream = query(prompt, options, name="ask")

    failed = False
    async with stream:
        async for message in stream:
            if as_json:
                click.echo(message.raw)
            else:
                _print_message(message)
            failed = failed or message.is_error

    if stream.exit_code:
        preview = format_stderr_preview(stream.stderr_text)
        click.echo(
            click.style(f"Agent exited with code {stream.exit_code}", fg="red"),
            err=True,
        )
        if preview:
            click.echo(f"  {preview}", err=True)
        return 1
    return 1 if failed else 0


def _print_message(message: MessageModel) -> None:
    tag = click.style(f"[{message.kind.value}]", fg=_KIND_COLORS.get(message.kind))
    if message.kind is MessageKind.ASSISTANT:
        body = messages_text([message])
    elif message.is_final:
        parts = [message.subtype or ""]
        if message.cost_usd is not None:
            parts.append(f"${message.cost_usd:.4f}")
        if message.session_id:
            parts.append(f"session {message.session_id}")
        body = " ".join(p for p in parts if p)
    elif message.kind is MessageKind.SYSTEM_INIT:
        body = f"session {message.session_id}" if message.session_id else ""
    elif message.error is not None:
        body = f"{truncate(message.raw, 120)} ({message.error})"
    else:
        body = truncate(json.dumps(message.payload), 120)
    click.echo(f"{tag} {body}".rstrip())
