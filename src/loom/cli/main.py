"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

import click

from loom._version import __version__

BANNER = f"""
 __
/ /  ___   ___   __ _
/ /__/ _ \\ / _ \\ /  ' \\
/____/\\___/ \\___//_/_/_/

Version: {__version__}
""".strip("\n")


def print_banner() -> None:
    """Print the loom banner."""
    click.echo(BANNER)


@click.group()
@click.version_option(version=__version__, prog_name="loom")
def cli() -> None:
    """loom: recurrent-network training with BPTT on a worker pool."""


# Import and register subcommands
from loom.cli.train import train  # noqa: E402

cli.add_command(train)
