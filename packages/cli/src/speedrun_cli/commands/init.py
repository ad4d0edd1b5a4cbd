"""init command: interactive wizard that writes a starter config file."""

from __future__ import annotations

from pathlib import Path

import click
import yaml
from rich.console import Console

console = Console()


@click.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite existing keys without asking.")
@click.pass_context
def init_cmd(ctx, force: bool):
    """Write a starter configuration file.

    Existing keys that the wizard does not ask about are preserved.
    """
    path = Path(ctx.obj["config_path"]).expanduser()
    console.print("\n[bold cyan]speedrun init[/bold cyan]: configuration wizard\n")

    if path.exists() and not force:
        if not click.confirm(f"{path} already exists. Update it?", default=True):
            console.print("[dim]Nothing written.[/dim]")
            return

    search_query = click.prompt("GitHub search query", default="is:open is:pr review-requested:@me")
    auto_merge = click.prompt(
        "Enable auto-merge after approving",
        type=click.Choice(["ask", "true", "false"]),
        default="ask",
    )
    config: dict = {
        "github": {"search_query": search_query, "auto_merge_on_approval": auto_merge},
        "ai": {"enabled": False},
    }

    if click.confirm("\nEnable AI analysis?", default=False):
        provider = click.prompt("AI provider", type=click.Choice(["openai", "anthropic"]), default="openai")
        api_key_env = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
        config["ai"] = {"enabled": True, "provider": provider}
        base_url = click.prompt("LLM gateway base URL (blank for the provider default)", default="", show_default=False)
        if base_url:
            config["ai"]["base_url"] = base_url
        console.print(
            f"[yellow]Export [bold]{api_key_env}[/bold] or set [bold]ai.api_key[/bold] "
            "(an op:// reference works too).[/yellow]"
        )

    _write_config(path, config)
    console.print(f"[green]Wrote {path}[/green]")
    console.print("\n[bold green]Setup complete![/bold green] Run: [bold]speedrun triage[/bold]")


def _write_config(path: Path, config: dict) -> None:
    """Write or update the config file, merging into any existing sections."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    for section, values in config.items():
        if isinstance(existing.get(section), dict):
            existing[section].update(values)
        else:
            existing[section] = values
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))
