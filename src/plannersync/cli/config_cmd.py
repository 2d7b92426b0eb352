"""Config commands: set, show, clear, settings."""

from __future__ import annotations

from typing import Optional

import click
from rich.panel import Panel

from ..sync.models import ConnectionProfile, ProviderKind
from ._common import SYNC_HOME, build_engine, console


def _mask(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}{'*' * 8}{token[-4:]}"


def register_config_commands(main: click.Group) -> None:
    """Register the config command group and the settings command."""

    @main.group()
    def config():
        """Connection profile: which repository holds your data.

        The profile is stored encrypted in the local store.
        """

    @config.command("set")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option(
        "--provider",
        type=click.Choice([p.value for p in ProviderKind]),
        default=ProviderKind.GITHUB.value,
        show_default=True,
    )
    @click.option("--token", prompt=True, hide_input=True, help="Personal access token.")
    @click.option("--owner", required=True, help="Repository owner (user or org).")
    @click.option("--repo", required=True, help="Repository name.")
    @click.option("--branch", default=None, help="Branch (default: main / master).")
    def config_set(home, provider, token, owner, repo, branch: Optional[str]):
        """Save the connection profile."""
        engine = build_engine(home)
        profile = engine.credentials.save(
            ConnectionProfile(
                provider=ProviderKind(provider),
                token=token,
                owner=owner,
                repo=repo,
                branch=branch or None,
            )
        )
        console.print(
            f"\n  [green]Saved[/] {profile.provider.display_name} profile for "
            f"[cyan]{profile.full_name}[/] on branch [cyan]{profile.branch}[/]"
        )
        console.print("  [dim]Run plannersync test to verify access.[/]\n")

    @config.command("show")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def config_show(home):
        """Show the stored profile (token masked)."""
        engine = build_engine(home)
        profile = engine.credentials.load()
        if profile is None:
            console.print("[yellow]Sync is not configured.[/]")
            return

        console.print()
        console.print(
            Panel(
                f"Provider: [cyan]{profile.provider.display_name}[/]\n"
                f"Repository: [bold]{profile.full_name}[/]\n"
                f"Branch: {profile.branch}\n"
                f"Token: [dim]{_mask(profile.token)}[/]",
                title="Sync Profile",
                border_style="cyan",
            )
        )
        console.print()

    @config.command("clear")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.confirmation_option(prompt="Remove the stored sync profile?")
    def config_clear(home):
        """Delete the stored profile."""
        engine = build_engine(home)
        engine.credentials.clear()
        console.print("[green]Sync profile removed.[/]")

    @main.command("settings")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--auto-sync/--no-auto-sync", default=None, help="Toggle auto-sync.")
    @click.option("--poll", type=float, default=None, help="Poll interval in seconds.")
    @click.option("--debounce", type=float, default=None, help="Debounce delay in seconds.")
    @click.option("--cooldown", type=float, default=None, help="Minimum gap between auto-syncs.")
    def settings(home, auto_sync, poll, debounce, cooldown):
        """Show or change auto-sync settings."""
        engine = build_engine(home)
        updates = {
            "auto_sync": auto_sync,
            "poll_interval": poll,
            "debounce_seconds": debounce,
            "cooldown_seconds": cooldown,
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if updates:
            try:
                engine.settings = engine.settings.model_validate(
                    {**engine.settings.model_dump(), **updates}
                )
            except ValueError as exc:
                raise click.BadParameter(str(exc)) from exc
            engine.save_settings()
            console.print("[green]Settings saved.[/]")

        s = engine.settings
        console.print(
            f"  Auto-sync: {'[green]on[/]' if s.auto_sync else '[yellow]off[/]'}\n"
            f"  Poll: {s.poll_interval}s | Debounce: {s.debounce_seconds}s | "
            f"Cooldown: {s.cooldown_seconds}s"
        )
