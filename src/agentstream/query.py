"""Query submission — build the agent command line and open a MessageStream."""

from __future__ import annotations

from agentstream.config.models import QueryOptions
from agentstream.constants import EnvProvider
from agentstream.errors import InvalidQueryError
from agentstream.process.env import build_env
from agentstream.process.session import ProcessSession
from agentstream.stream import MessageStream

#: Output format the stream layer parses.
STREAM_FORMAT = "stream-json"


def build_args(prompt: str, options: QueryOptions) -> list[str]:
    """Return the argument vector (without the executable) for *prompt*.

    Raises:
        InvalidQueryError: Empty prompt, or extra args selecting an output
            format other than ``stream-json``.
    """
    if not isinstance(prompt, str) or not prompt.strip():
        msg = "Prompt must be a non-empty string"
        raise InvalidQueryError(msg)

    args = [*options.executable_args, "--print"]
    if options.resume is not None:
        args.extend(["--resume", options.resume])
    elif options.continue_session:
        args.append("--continue")
    args.extend(options.to_args())
    args.extend(options.extra_args)
    _ensure_stream_json(args)
    args.append(prompt)
    return args


def query(
    prompt: str,
    options: QueryOptions | None = None,
    *,
    env_provider: EnvProvider | None = None,
    name: str | None = None,
) -> MessageStream:
    """Prepare a query; the subprocess starts when the stream is entered.

    Example::

        async with query("What is 2+2?", QueryOptions(max_turns=1)) as stream:
            async for message in stream:
                print(message.kind, message.payload)
    """
    options = options or QueryOptions()
    args = build_args(prompt, options)
    session = ProcessSession(
        options.executable,
        args,
        cwd=options.cwd,
        env=build_env(options.env, provider=env_provider),
        name=name,
        grace_period=options.grace_period,
    )
    return MessageStream(session)


def resume(
    session_id: str,
    prompt: str,
    options: QueryOptions | None = None,
    *,
    env_provider: EnvProvider | None = None,
    name: str | None = None,
) -> MessageStream:
    """Continue the conversation identified by *session_id*."""
    if not session_id:
        msg = "session_id must be a non-empty string"
        raise InvalidQueryError(msg)
    base = options or QueryOptions()
    resumed = base.model_copy(update={"resume": session_id, "continue_session": False})
    return query(prompt, resumed, env_provider=env_provider, name=name)


def continue_conversation(
    prompt: str,
    options: QueryOptions | None = None,
    *,
    env_provider: EnvProvider | None = None,
    name: str | None = None,
) -> MessageStream:
    """Continue the most recent conversation in the working directory."""
    base = options or QueryOptions()
    continued = base.model_copy(update={"continue_session": True, "resume": None})
    return query(prompt, continued, env_provider=env_provider, name=name)


def _ensure_stream_json(args: list[str]) -> None:
    """Append ``--output-format stream-json --verbose`` unless present."""
    if "--output-format" not in args:
        args.extend(["--output-format", STREAM_FORMAT, "--verbose"])
        return

    idx = args.index("--output-format")
    selected = args[idx + 1] if idx + 1 < len(args) else None
    if selected != STREAM_FORMAT:
        msg = f"Output format must be '{STREAM_FORMAT}', got {selected!r}"
        raise InvalidQueryError(msg)
    # The agent requires --verbose alongside stream-json in --print mode.
    if "--verbose" not in args:
        args.append("--verbose")
