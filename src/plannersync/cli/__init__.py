"""
plannersync CLI -- configure and drive planner data sync.

The main Click group is defined here; each command group lives in its
own module and is attached via a register function.

Entry point: plannersync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="plannersync")
def main():
    """plannersync -- keep planner data in a GitHub or Gitee repository."""


from .config_cmd import register_config_commands
from .sync_cmd import register_sync_commands

register_config_commands(main)
register_sync_commands(main)
