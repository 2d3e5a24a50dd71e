"""
desiredstate CLI: run and inspect the reconciliation agent.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: desiredstate.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="desiredstate")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def main(verbose: bool):
    """desiredstate: keep this host's deployments in line with the registry."""
    from ._common import setup_console_logging

    setup_console_logging(verbose)


from .agent import register_agent_commands
from .tools import register_tool_commands

register_agent_commands(main)
register_tool_commands(main)
