"""CLI entry point for speedrun.

Commands:
  triage  walk the open PRs, enriched with diff size, checks, reviews and AI advice
  cache   inspect or clean the local cache (stats, clean, clear)
  init    write a starter configuration file
"""

from __future__ import annotations

import importlib.metadata
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from speedrun_cli.commands.cache import cache_cmd
from speedrun_cli.commands.init import init_cmd
from speedrun_cli.commands.triage import triage_cmd
from speedrun_core.config import DEFAULT_CONFIG_PATH

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"


def _build_cache(config: dict):
    """Instantiate the cache from the ``cache`` config section.

      cache.enabled: false → NoOpCache (every read goes to the network)
      (default)            → SQLiteCache at cache.path, entries kept cache.max_age

    This factory lives in cli.py so neither speedrun_core nor speedrun_cache
    know about the config format.
    """
    from speedrun_cache.noop import NoOpCache

    section = config.get("cache") or {}
    if not section.get("enabled", True):
        return NoOpCache()

    from speedrun_cache.sqlite import SQLiteCache

    return SQLiteCache(db_path=str(Path(section["path"]).expanduser()), max_age=section["max_age"])


def _configure_logging(log_config: dict) -> None:
    """Route every library log record to one handler.

    The default is a rotating file so log lines never interleave with the
    triage screen; ``log.path: "-"`` (or ``stderr``) logs to the terminal.
    """
    level = getattr(logging, str(log_config.get("level") or "info").upper(), logging.INFO)
    path = log_config.get("path") or "-"

    if path in ("-", "stderr"):
        handler: logging.Handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        log_path = Path(path).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(level=level, handlers=[handler], force=True)
    # PyGithub and the HTTP stack are chatty at DEBUG.
    for noisy in ("urllib3", "github", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))


@click.group()
@click.version_option(
    version=importlib.metadata.version("speedrun"),
    prog_name="speedrun",
)
@click.option(
    "--config",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the configuration file.",
    envvar="SPEEDRUN_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level. Overrides config file.",
)
@click.pass_context
def main(ctx: click.Context, config_path: str, log_level: str | None):
    """Triage open GitHub pull requests fast, with optional AI advice."""
    from speedrun_core.config import SecretResolver, load_config, resolve_secrets
    from speedrun_core.errors import ConfigError

    ctx.ensure_object(dict)

    try:
        config = load_config(config_path, cli_overrides={"log.level": log_level})
        config = resolve_secrets(config, SecretResolver(account=config["op"].get("account")))
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    _configure_logging(config["log"])
    logging.getLogger(__name__).debug("Loaded configuration from %s", config_path)

    cache = _build_cache(config)
    ctx.obj["cache"] = cache
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path
    ctx.call_on_close(cache.close)


main.add_command(triage_cmd)
main.add_command(cache_cmd)
main.add_command(init_cmd)
