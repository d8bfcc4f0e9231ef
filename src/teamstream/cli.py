"""Root CLI group and version flag."""

import signal

import click

# Keep SIGPIPE from killing the process when stdout is piped into a
# reader that exits early (e.g. ``teamstream run ... --json | head``).
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from teamstream import __version__
from teamstream.commands.init import init
from teamstream.commands.run import run


@click.group()
@click.version_option(version=__version__, prog_name="teamstream")
def cli() -> None:
    """teamstream — stream and supervise AI coding-agent sessions."""


cli.add_command(init)
cli.add_command(run)
