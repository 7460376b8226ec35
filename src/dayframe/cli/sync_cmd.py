"""Sync commands: status, drain, queue, clear-queue."""

from __future__ import annotations

import asyncio
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import DayframeError
from ..sync.engine import SyncEngine
from ..sync.models import DrainReport
from ._common import DAYFRAME_HOME, console, open_engine


def _yes_no(flag: bool) -> str:
    return "[green]yes[/]" if flag else "[yellow]no[/]"


async def _unlock_and_drain(
    engine: SyncEngine, password: Optional[str], force: bool
) -> DrainReport:
    try:
        if password:
            await engine.unlock(password)
        return await engine.drain(force=force)
    finally:
        await engine.close()


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Local-first sync: queue, status, and manual drains."""

    @sync.command("status")
    @click.option("--home", default=DAYFRAME_HOME, type=click.Path())
    def sync_status(home):
        """Show connectivity, encryption, and queue state."""
        engine = open_engine(home)
        info = asyncio.run(engine.status())

        records = info["records"]
        console.print()
        console.print(
            Panel(
                f"Account: {info['user_id'] or '[dim]signed out[/]'}\n"
                f"Remote: {info['remote_url'] or '[yellow]not configured[/]'}\n"
                f"Encryption: {_yes_no(info['encryption_enabled'])}\n"
                f"Queue: [bold]{info['queue_depth']}[/] pending"
                + (f" (oldest {info['oldest_enqueued_at'][:19]})" if info["oldest_enqueued_at"] else "")
                + "\n"
                f"Records: {records['journal_entries']} journal, "
                f"{records['day_commits']} commits, {records['tasks']} tasks",
                title="Dayframe Sync",
                border_style="cyan",
            )
        )
        for op_type, count in sorted(info["queue_by_type"].items()):
            console.print(f"    [cyan]{op_type}[/]: {count}")
        console.print()

    @sync.command("drain")
    @click.option("--home", default=DAYFRAME_HOME, type=click.Path())
    @click.option("--force", is_flag=True, help="Ignore per-entry backoff.")
    @click.option("--user", "user_id", envvar="DAYFRAME_USER_ID", help="Signed-in account id.")
    @click.option(
        "--token", "access_token", envvar="DAYFRAME_ACCESS_TOKEN", help="Account access token."
    )
    @click.option(
        "--password",
        envvar="DAYFRAME_PASSWORD",
        help="Account password, to unlock an encrypted account first.",
    )
    def sync_drain(home, force, user_id, access_token, password):
        """Replay the retry queue now as the given account."""
        engine = open_engine(home, user_id, access_token)
        try:
            report = asyncio.run(_unlock_and_drain(engine, password, force))
        except DayframeError as exc:
            console.print(f"\n  [red]Drain failed:[/] {exc}\n")
            raise SystemExit(1)

        if report.skipped_reason:
            console.print(f"\n  [yellow]Skipped:[/] {report.skipped_reason}\n")
            return
        console.print(
            f"\n  Attempted [bold]{report.attempted}[/]: "
            f"[green]{report.succeeded} ok[/], "
            f"[red]{report.failed} failed[/], "
            f"{report.dropped} dropped, {report.deferred} deferred\n"
        )

    @sync.command("queue")
    @click.option("--home", default=DAYFRAME_HOME, type=click.Path())
    def sync_queue(home):
        """List pending queue entries."""
        engine = open_engine(home)
        items = engine.queue.items()
        if not items:
            console.print("\n  [green]Queue is empty.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
        table.add_column("ID", style="dim")
        table.add_column("Type", style="bold cyan", no_wrap=True)
        table.add_column("Record", no_wrap=True)
        table.add_column("Retries", justify="right")
        table.add_column("Queued", style="dim", no_wrap=True)
        table.add_column("Last error")
        for item in items:
            table.add_row(
                item.id,
                item.type.value,
                item.record_key,
                str(item.retry_count),
                item.enqueued_at.isoformat()[:16].replace("T", " "),
                item.last_error or "",
            )
        console.print()
        console.print(table)
        console.print(f"\n  [dim]{len(items)} entries[/]\n")

    @sync.command("clear-queue")
    @click.option("--home", default=DAYFRAME_HOME, type=click.Path())
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    def sync_clear_queue(home, yes):
        """Discard every pending queue entry (unsynced changes stay local)."""
        engine = open_engine(home)
        if not yes and not click.confirm("Discard all pending sync operations?"):
            console.print("  Aborted.")
            return
        count = engine.queue.clear()
        console.print(f"\n  [green]Cleared {count} queue entries.[/]\n")
