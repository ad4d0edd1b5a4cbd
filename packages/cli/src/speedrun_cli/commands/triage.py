"""triage command: walk the open PRs and approve, merge or skip each one."""

from __future__ import annotations

import logging
import os
import time

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from speedrun_core.enrichment import (
    AutoMergeEnabled,
    FieldState,
    PRApproved,
    PRMerged,
    PRsLoaded,
    Refreshed,
)

logger = logging.getLogger(__name__)

console = Console()

_POLL_INTERVAL = 0.2

_ACTIONS = {
    "a": "[a]pprove",
    "m": "[m]erge",
    "u": "a[u]to-merge",
    "s": "[s]kip",
    "r": "[r]efresh",
    "q": "[q]uit",
}

_CHECK_STYLE = {"success": "green", "failure": "red", "error": "red", "pending": "yellow"}
_RECOMMENDATION_STYLE = {"APPROVE": "green", "REVIEW": "yellow", "DEEP_REVIEW": "red"}


def _build_orchestrator(config: dict, cache, token: str):
    """Wire gateway, optional agent and orchestrator from the loaded config.

    Returns ``(orchestrator, agent)``; ``agent`` is None when AI is disabled.
    """
    from speedrun_core.agent.agent import AnalysisAgent, build_provider
    from speedrun_core.agent.tools import build_default_registry
    from speedrun_core.backoff import BackoffConfig
    from speedrun_core.enrichment import Orchestrator
    from speedrun_core.errors import GatewayError
    from speedrun_core.gh.pull_request import GitHubGateway

    github = config["github"]
    backoff = BackoffConfig.from_config(config)
    gateway = GitHubGateway(
        token,
        github["search_query"],
        cache=cache,
        backoff=backoff,
        checks=config.get("checks"),
        timeout=github["timeout"],
    )

    try:
        username = gateway.authenticated_user()
    except GatewayError as e:
        logger.warning("Could not determine the authenticated user: %s", e)
        username = ""

    agent = None
    ai = config["ai"]
    if ai.get("enabled"):
        provider = build_provider(config, backoff.ai)
        agent = AnalysisAgent(provider, build_default_registry(gateway, cache), cache, tool_timeout=ai["tool_timeout"])

    orchestrator = Orchestrator(
        gateway,
        agent,
        username=username,
        analysis_timeout=ai["analysis_timeout"],
        read_timeout=github["read_timeout"],
        auto_merge_on_approval=str(github.get("auto_merge_on_approval", "ask")).lower(),
    )
    return orchestrator, agent


@click.command("triage")
@click.option("--query", default=None, help="GitHub search query. Overrides config file.")
@click.option("--ai/--no-ai", "ai_enabled", default=None, help="Enable or disable AI analysis. Overrides config file.")
@click.pass_context
def triage_cmd(ctx, query: str | None, ai_enabled: bool | None):
    """Triage open pull requests one at a time.

    Diff size, CI checks, reviews and (optionally) an AI recommendation are
    loaded in the background; the list is shown once they settle.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub token (or github.token, or a gh CLI session)
      OPENAI_API_KEY       When ai.provider is openai and ai.api_key is unset
      ANTHROPIC_API_KEY    When ai.provider is anthropic and ai.api_key is unset
    """
    from speedrun_cli.auth import resolve_github_token
    from speedrun_core.errors import ConfigError

    config = ctx.obj["config"]
    cache = ctx.obj["cache"]
    if query:
        config["github"]["search_query"] = query
    if ai_enabled is not None:
        config["ai"]["enabled"] = ai_enabled

    token = resolve_github_token(config["github"].get("token"))
    if not token:
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )

    ai = config["ai"]
    if ai.get("enabled") and not ai.get("api_key"):
        env_name = "ANTHROPIC_API_KEY" if ai.get("provider") == "anthropic" else "OPENAI_API_KEY"
        if not os.environ.get(env_name):
            raise click.UsageError(f"AI analysis is enabled but neither ai.api_key nor {env_name} is set.")

    try:
        orchestrator, agent = _build_orchestrator(config, cache, token)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    orchestrator.subscribe(_report)
    settle_timeout = config["github"]["timeout"] + (ai["analysis_timeout"] if agent is not None else 0)
    try:
        console.print(f"[dim]Searching: {config['github']['search_query']}[/dim]")
        items = orchestrator.fetch_prs().result()
        if not items:
            console.print("[yellow]No open pull requests found.[/yellow]")
            return
        _wait_until_settled(orchestrator, settle_timeout)
        console.print(_render_table(orchestrator.items))
        _triage_loop(orchestrator, settle_timeout)
    finally:
        orchestrator.shutdown(wait=False)
        if agent is not None:
            agent.close()


def _triage_loop(orchestrator, settle_timeout: float) -> None:
    done: set[str] = set()
    while True:
        pending = [item for item in orchestrator.items if not item.merged and item.id not in done]
        if not pending:
            console.print("\n[bold green]All pull requests triaged.[/bold green]")
            action = click.prompt("[r]efresh or [q]uit", type=click.Choice(["r", "q"]), default="q")
        else:
            item = pending[0]
            console.print(_render_detail(item))
            action = click.prompt(
                " / ".join(_ACTIONS.values()),
                type=click.Choice(list(_ACTIONS)),
                default="s",
                show_choices=False,
            )

        if action == "q":
            return
        if action == "r":
            orchestrator.refresh_all().result()
            _wait_until_settled(orchestrator, settle_timeout)
            console.print(_render_table(orchestrator.items))
            done.clear()
            continue

        if action == "a":
            orchestrator.approve(item).result()
            if item.approved and orchestrator.auto_merge_on_approval == "ask":
                if click.confirm("Enable auto-merge?", default=False):
                    orchestrator.enable_auto_merge(item).result()
        elif action == "m":
            if not click.confirm(f"Squash-merge {item.id}?", default=True):
                continue
            orchestrator.merge(item).result()
        elif action == "u":
            orchestrator.enable_auto_merge(item).result()
        done.add(item.id)


def _is_settled(item) -> bool:
    states = (item.diff_state, item.checks_state, item.reviews_state, item.analysis_state)
    return FieldState.LOADING not in states


def _wait_until_settled(orchestrator, timeout: float) -> None:
    """Block (with a spinner) until every item's fields have resolved or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    with console.status("Loading diff stats, checks, reviews and analysis..."):
        while time.monotonic() < deadline:
            if all(_is_settled(item) for item in orchestrator.items):
                return
            time.sleep(_POLL_INTERVAL)
    logger.warning("Enrichment did not settle within %.0fs", timeout)


def _report(event) -> None:
    """Print the outcome of user-triggered operations."""
    if isinstance(event, PRsLoaded) and not event.ok:
        console.print(f"[red]Failed to load pull requests: {event.error}[/red]")
    elif isinstance(event, PRApproved):
        if event.ok:
            console.print(f"[green]Approved {event.item_id}[/green]")
        else:
            console.print(f"[red]Failed to approve {event.item_id}: {event.error}[/red]")
    elif isinstance(event, PRMerged):
        if event.ok:
            console.print(f"[green]Merged {event.item_id}[/green]")
        else:
            console.print(f"[red]Failed to merge {event.item_id}: {event.error}[/red]")
    elif isinstance(event, AutoMergeEnabled):
        if not event.ok:
            console.print(f"[red]Auto-merge failed for {event.item_id}: {event.error}[/red]")
        elif event.value == "merged":
            console.print(f"[green]{event.item_id} had nothing pending and was merged directly[/green]")
        else:
            console.print(f"[green]Auto-merge enabled for {event.item_id}[/green]")
    elif isinstance(event, Refreshed):
        if event.ok:
            console.print(f"[dim]Refreshed: {event.new_count} new, {event.updated_count} updated[/dim]")
        else:
            console.print(f"[red]Refresh failed: {event.error}[/red]")


# ---------------------------------------------------------------------- #
# Rendering                                                                #
# ---------------------------------------------------------------------- #


def _size_cell(item) -> str:
    if item.diff_state is FieldState.LOADING:
        return "[dim]...[/dim]"
    if item.diff_state is FieldState.FAILED:
        return "[red]error[/red]"
    stats = item.diff_stats
    return f"[green]+{stats.additions}[/green] [red]-{stats.deletions}[/red] ({stats.files})"


def _checks_cell(item) -> str:
    if item.checks_state is FieldState.LOADING:
        return "[dim]...[/dim]"
    if item.checks_state is FieldState.FAILED:
        return "[red]error[/red]"
    state = item.check_status.state
    style = _CHECK_STYLE.get(state, "white")
    return f"[{style}]{state}[/{style}]"


def _reviews_cell(item) -> str:
    if item.reviews_state is FieldState.LOADING:
        return "[dim]...[/dim]"
    if item.reviews_state is FieldState.FAILED:
        return "[red]error[/red]"
    if item.approved:
        return "[green]approved by you[/green]"
    if item.dismissed:
        return "[yellow]your review dismissed[/yellow]"
    if item.reviewed:
        return "reviewed by you"
    return str(len(item.reviews or []))


def _ai_cell(item) -> str:
    state = item.analysis_state
    if state is FieldState.DISABLED:
        return "[dim]-[/dim]"
    if state is FieldState.LOADING:
        return "[dim]...[/dim]"
    if state is FieldState.SKIPPED:
        return "[dim]skipped[/dim]"
    if state is FieldState.FAILED:
        return "[red]failed[/red]"
    recommendation = item.analysis.recommendation.value
    style = _RECOMMENDATION_STYLE.get(recommendation, "white")
    return f"[{style}]{recommendation}[/{style}] ({item.analysis.risk_level})"


def _render_table(items) -> Table:
    table = Table(title="Pull requests", show_header=True, header_style="bold cyan")
    table.add_column("PR", style="bold")
    table.add_column("Title", max_width=50)
    table.add_column("Author")
    table.add_column("Size", justify="right")
    table.add_column("Checks")
    table.add_column("Reviews")
    table.add_column("AI")

    for item in items:
        title = escape(item.pr.title)
        if item.merged:
            title = f"[strike]{title}[/strike]"
        table.add_row(
            item.id,
            title,
            item.pr.author,
            _size_cell(item),
            _checks_cell(item),
            _reviews_cell(item),
            _ai_cell(item),
        )
    return table


def _render_detail(item) -> Panel:
    pr = item.pr
    lines = [f"[bold]{escape(pr.title)}[/bold]"]
    if pr.html_url:
        lines.append(f"[link={pr.html_url}]{pr.html_url}[/link]")
    meta = f"by {pr.author or 'unknown'}"
    if pr.labels:
        meta += f"  labels: {', '.join(pr.labels)}"
    lines += [meta, ""]
    lines.append(f"Size:    {_size_cell(item)}")
    lines.append(f"Checks:  {_checks_cell(item)}")
    if item.checks_state is FieldState.LOADED and item.check_status.description:
        lines.append(f"         [dim]{item.check_status.description}[/dim]")
    lines.append(f"Reviews: {_reviews_cell(item)}")
    lines.append(f"AI:      {_ai_cell(item)}")
    if item.analysis_state is FieldState.LOADED and item.analysis.reasoning:
        lines.append(f"         {escape(item.analysis.reasoning)}")
    elif item.analysis_state in (FieldState.FAILED, FieldState.SKIPPED) and item.analysis_error:
        lines.append(f"         [dim]{item.analysis_error}[/dim]")
    return Panel("\n".join(lines), title=item.id, border_style="cyan")
