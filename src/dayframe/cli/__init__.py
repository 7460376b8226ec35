"""
Dayframe CLI -- inspect and nudge the local sync layer.

Each command group lives in its own module and is registered on the
main group here.

Entry point: dayframe.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="dayframe")
def main():
    """Dayframe — local-first journal, schedule, and tasks."""


from .sync_cmd import register_sync_commands
from .audit_cmd import register_audit_commands

register_sync_commands(main)
register_audit_commands(main)
