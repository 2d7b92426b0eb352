"""Sync commands: test, status, push, pull, auto, files, cleanup, watch."""

from __future__ import annotations

import sys
import threading
from typing import Optional

import click
from rich.table import Table

from ..sync.monitor import ChangeMonitor
from ._common import (
    SYNC_HOME,
    build_engine,
    connect_or_exit,
    console,
    print_batch,
    state_label,
)


def register_sync_commands(main: click.Group) -> None:
    """Register the sync commands on the main group."""

    @main.command("test")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def test_connection(home):
        """Check that the repository is reachable and writable."""
        engine = build_engine(home)
        check = engine.connect()
        if check.ok:
            console.print(f"[bold green]OK[/] {check.message}")
        else:
            console.print(f"[bold red]FAILED[/] {check.message}")
            sys.exit(1)

    @main.command("status")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
    def status(home, verbose):
        """Compare every module with its remote copy."""
        engine = build_engine(home, verbose)
        connect_or_exit(engine)

        table = Table(title="Sync Status", show_header=True, header_style="bold")
        table.add_column("Module")
        table.add_column("State")
        table.add_column("Local")
        table.add_column("Remote")
        table.add_column("Last Sync", style="dim")
        for st in engine.check_status():
            table.add_row(
                st.module,
                state_label(st.state),
                st.local_fingerprint[:8] or "-",
                st.remote_fingerprint[:8] or "[dim]none[/]",
                st.last_sync_time or "never",
            )
        console.print(table)

    def _single_or_all(engine, module: Optional[str], push: bool):
        if module is None:
            result = engine.sync_all_to_cloud() if push else engine.sync_all_from_cloud()
            print_batch(result, "Push" if push else "Pull")
            return result.success

        if engine.registry.get(module) is None:
            raise click.BadParameter(
                f"unknown module {module!r}; choose from {', '.join(engine.registry.names())}",
                param_hint="--module",
            )
        ok = engine.push_module(module) if push else engine.pull_module(module)
        verb = "pushed" if push else "pulled"
        if ok:
            console.print(f"  [green]{module} {verb}[/]\n")
        else:
            console.print(f"  [red]{module} not {verb}[/] [dim](see logs)[/]\n")
        return ok

    @main.command("push")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--module", default=None, help="Push only this module.")
    @click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
    def push(home, module, verbose):
        """Force-push local data to the repository."""
        engine = build_engine(home, verbose)
        connect_or_exit(engine)
        if not _single_or_all(engine, module, push=True):
            sys.exit(1)

    @main.command("pull")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--module", default=None, help="Pull only this module.")
    @click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
    def pull(home, module, verbose):
        """Force-pull remote data, replacing local data."""
        engine = build_engine(home, verbose)
        connect_or_exit(engine)
        if not _single_or_all(engine, module, push=False):
            sys.exit(1)

    @main.command("auto")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
    def auto(home, verbose):
        """Sync only what changed, in whichever direction is needed."""
        engine = build_engine(home, verbose)
        connect_or_exit(engine)
        result = engine.auto_sync()
        print_batch(result, "Auto-sync")
        if not result.success:
            sys.exit(1)

    @main.command("files")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def files(home):
        """List the sync files stored in the repository."""
        engine = build_engine(home)
        connect_or_exit(engine)
        entries = engine.list_sync_files()
        if not entries:
            console.print("  [yellow]Repository has no files yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("File")
        table.add_column("Size", justify="right")
        table.add_column("SHA", style="dim")
        for entry in entries:
            table.add_row(entry.name, str(entry.size), entry.version_token[:10])
        console.print(table)

    @main.command("cleanup")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.confirmation_option(prompt="Delete every sync file from the repository?")
    def cleanup(home):
        """Delete all remote sync files."""
        engine = build_engine(home)
        connect_or_exit(engine)
        result = engine.cleanup_cloud_files()
        print_batch(result, "Cleanup")
        if not result.success:
            sys.exit(1)

    @main.command("watch")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
    def watch(home, verbose):
        """Watch local data and auto-sync changes (Ctrl+C to stop)."""
        engine = build_engine(home, verbose)
        connect_or_exit(engine)
        if not engine.settings.auto_sync:
            console.print("  [yellow]Auto-sync is off;[/] changes will be detected but not synced.")

        monitor = ChangeMonitor(engine)
        monitor.start()
        console.print(f"  [green]Watching[/] {len(engine.watched_keys())} keys\n")

        idle = threading.Event()
        try:
            while not idle.wait(timeout=1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            monitor.stop()
            engine.disconnect()
