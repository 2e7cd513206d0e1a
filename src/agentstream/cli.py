"""Root CLI group and version flag."""

import signal

import click

# Keep a closed stdout pipe (e.g. `agentstream ask ... | head`) from
# killing the process mid-write.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from agentstream import __version__  # noqa: E402
from agentstream.commands.ask import ask  # noqa: E402
from agentstream.commands.init import init  # noqa: E402
from agentstream.commands.run import run  # noqa: E402


@click.group()
@click.version_option(version=__version__, prog_name="agentstream")
def cli() -> None:
    """agentstream — run command-line agents as typed message streams."""


cli.add_command(init)
cli.add_command(run)
cli.add_command(ask)
