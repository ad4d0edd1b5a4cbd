"""cache commands: inspect and clean the local response cache."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()


def _require_cache(ctx: click.Context):
    from speedrun_cache.noop import NoOpCache

    cache = ctx.obj.get("cache") if ctx.obj else None
    if cache is None or isinstance(cache, NoOpCache):
        raise click.UsageError("Caching is disabled. Set 'cache.enabled: true' in the config file.")
    return cache


@click.group("cache")
def cache_cmd():
    """Inspect or clean the local cache."""


@cache_cmd.command("stats")
@click.pass_context
def stats_cmd(ctx):
    """Show how many entries the cache holds."""
    stats = _require_cache(ctx).stats()

    table = Table(title="Cache", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Database", stats.database_path)
    table.add_row("Total entries", str(stats.total_entries))
    table.add_row("Valid entries", f"[green]{stats.valid_entries}[/green]")
    table.add_row("Expired entries", f"[yellow]{stats.expired_entries}[/yellow]")
    console.print(table)


@cache_cmd.command("clean")
@click.pass_context
def clean_cmd(ctx):
    """Delete expired entries."""
    removed = _require_cache(ctx).cleanup()
    console.print(f"[green]Removed {removed} expired entr{'y' if removed == 1 else 'ies'}.[/green]")


@cache_cmd.command("clear")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
def clear_cmd(ctx, yes: bool):
    """Delete every entry, expired or not."""
    cache = _require_cache(ctx)
    if not yes and not click.confirm("Delete all cached data?", default=False):
        console.print("[dim]Cache left untouched.[/dim]")
        return
    cache.clear()
    console.print("[green]Cache cleared.[/green]")
