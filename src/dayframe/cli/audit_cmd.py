"""Audit command: show the security audit log."""

from __future__ import annotations

from pathlib import Path

import click
from rich.table import Table

from ..audit import read_audit_log
from ._common import DAYFRAME_HOME, console

EVENT_COLORS = {
    "ENCRYPTION_ENABLE": "green",
    "ENCRYPTION_DISABLE": "yellow",
    "SYNC_PULL": "magenta",
    "SYNC_DROP": "red",
    "SIGN_OUT": "blue",
}


def register_audit_commands(main: click.Group) -> None:
    """Register the audit command."""

    @main.command()
    @click.option("--home", default=DAYFRAME_HOME, help="Dayframe home directory.", type=click.Path())
    @click.option("--limit", default=0, help="Show only the newest N entries.")
    def audit(home: str, limit: int):
        """Show the security audit log."""
        entries = read_audit_log(Path(home).expanduser(), limit=limit)
        if not entries:
            console.print("[yellow]No audit log found.[/]")
            return

        console.print()
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Event", style="bold cyan", no_wrap=True)
        table.add_column("Detail")
        table.add_column("Host", style="dim")

        for e in entries:
            ts = e.timestamp[:19].replace("T", " ") if "T" in e.timestamp else e.timestamp
            color = EVENT_COLORS.get(e.event_type, "white")
            table.add_row(ts, f"[{color}]{e.event_type}[/]", e.detail, e.host)

        console.print(table)
        console.print(f"\n  [dim]{len(entries)} entries[/]\n")
