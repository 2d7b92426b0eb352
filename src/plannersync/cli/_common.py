"""Shared utilities for all CLI command modules.

Provides the Rich console, logging setup, engine construction, and
formatting helpers used by every command group.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .. import SYNC_HOME
from ..sync.engine import SyncEngine
from ..sync.models import BatchResult, ModuleSyncState

console = Console()
logger = logging.getLogger("plannersync.cli")

LOG_DIR = "logs"
LOG_FILE = "sync.log"


def setup_logging(home: Path, verbose: bool = False) -> None:
    """Send log records to ``<home>/logs/sync.log``.

    With ``verbose`` everything down to DEBUG also goes to stderr.
    """
    log_dir = home / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")

    root = logging.getLogger()
    if not any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_dir / LOG_FILE
        for h in root.handlers
    ):
        handler = logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8")
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if verbose:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        root.addHandler(stream)
        root.setLevel(logging.DEBUG)
    else:
        root.setLevel(logging.INFO)


def build_engine(home: str, verbose: bool = False) -> SyncEngine:
    """Create an engine for ``home`` with logging configured."""
    home_path = Path(home).expanduser()
    home_path.mkdir(parents=True, exist_ok=True)
    setup_logging(home_path, verbose)
    return SyncEngine(home_path)


def connect_or_exit(engine: SyncEngine) -> None:
    """Open the sync session or print why not and exit 1."""
    check = engine.connect()
    if not check.ok:
        console.print(f"[bold red]{check.message}[/]")
        if check.message == "Sync is not configured":
            console.print("  Run [cyan]plannersync config set[/] first.")
        sys.exit(1)
    console.print(f"  [dim]{check.message}[/]")


def state_label(state: ModuleSyncState) -> str:
    """Map a module sync state to Rich markup."""
    return {
        ModuleSyncState.IN_SYNC: "[bold green]IN SYNC[/]",
        ModuleSyncState.LOCAL_AHEAD: "[bold cyan]LOCAL AHEAD[/]",
        ModuleSyncState.REMOTE_AHEAD: "[bold magenta]REMOTE AHEAD[/]",
        ModuleSyncState.CONFLICT: "[bold red]CONFLICT[/]",
    }.get(state, "[dim]UNKNOWN[/]")


def print_batch(result: BatchResult, title: str) -> None:
    """Render a per-module result table plus the summary line."""
    if result.results:
        table = Table(title=title, show_header=True, header_style="bold")
        table.add_column("Module")
        table.add_column("Result")
        for name, ok in result.results.items():
            table.add_row(name, "[green]ok[/]" if ok else "[red]failed[/]")
        console.print(table)

    colour = "green" if result.success else "yellow" if result.results else "red"
    console.print(f"  [{colour}]{result.summary()}[/]\n")

