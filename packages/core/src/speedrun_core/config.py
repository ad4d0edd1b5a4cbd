import copy
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

import yaml

from speedrun_core.durations import parse_duration
from speedrun_core.errors import ConfigError

logger = logging.getLogger(__name__)

_CONFIG_HOME = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
_DATA_HOME = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")

DEFAULT_CONFIG_PATH = str(_CONFIG_HOME / "speedrun" / "config.yml")

DEFAULT_CONFIG: dict = {
    "github": {
        "token": None,
        "search_query": "is:open is:pr",
        "auto_merge_on_approval": "ask",  # "true" | "false" | "ask"
        "timeout": "60s",
        "read_timeout": "10s",
    },
    "ai": {
        "enabled": False,
        "provider": "openai",  # "openai" | "anthropic"
        "base_url": None,  # LLM gateway; None = provider default
        "api_key": None,
        "model": None,  # provider default when unset
        "analysis_timeout": "2m",
        "tool_timeout": "90s",
        "timeout": "90s",
    },
    "checks": {
        "ignored": [],
        "required": [],  # if set, only these checks matter
    },
    "cache": {
        "enabled": True,
        "path": str(_DATA_HOME / "speedrun" / "cache.db"),
        "max_age": "7d",
    },
    "log": {
        "level": "info",
        "path": str(_DATA_HOME / "speedrun" / "speedrun.log"),  # "-" or "stderr" for the terminal
    },
    "backoff": {},
    "op": {
        "enabled": True,
        "account": None,
    },
}

# SPEEDRUN_<SECTION>_<KEY> environment overrides. Lists are comma-separated.
_ENV_OVERRIDES = {
    "SPEEDRUN_GITHUB_TOKEN": ("github", "token"),
    "SPEEDRUN_GITHUB_SEARCH_QUERY": ("github", "search_query"),
    "SPEEDRUN_GITHUB_AUTO_MERGE_ON_APPROVAL": ("github", "auto_merge_on_approval"),
    "SPEEDRUN_AI_ENABLED": ("ai", "enabled"),
    "SPEEDRUN_AI_PROVIDER": ("ai", "provider"),
    "SPEEDRUN_AI_BASE_URL": ("ai", "base_url"),
    "SPEEDRUN_AI_API_KEY": ("ai", "api_key"),
    "SPEEDRUN_AI_MODEL": ("ai", "model"),
    "SPEEDRUN_CHECKS_IGNORED": ("checks", "ignored"),
    "SPEEDRUN_CHECKS_REQUIRED": ("checks", "required"),
    "SPEEDRUN_CACHE_ENABLED": ("cache", "enabled"),
    "SPEEDRUN_CACHE_PATH": ("cache", "path"),
    "SPEEDRUN_CACHE_MAX_AGE": ("cache", "max_age"),
    "SPEEDRUN_LOG_LEVEL": ("log", "level"),
    "SPEEDRUN_LOG_PATH": ("log", "path"),
    "SPEEDRUN_OP_ENABLED": ("op", "enabled"),
    "SPEEDRUN_OP_ACCOUNT": ("op", "account"),
    "OP_ACCOUNT": ("op", "account"),
}

_DURATION_KEYS = {
    ("github", "timeout"),
    ("github", "read_timeout"),
    ("ai", "analysis_timeout"),
    ("ai", "tool_timeout"),
    ("ai", "timeout"),
    ("cache", "max_age"),
}


def load_config(config_path: str = DEFAULT_CONFIG_PATH, cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. The YAML config file
      3. SPEEDRUN_* environment variables
      4. CLI argument overrides, as ``{"section.key": value}``

    Duration values ("30s", "2m", "7d") are converted to seconds.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path).expanduser()
    if path.exists():
        with open(path) as f:
            try:
                file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {path} must contain a mapping.")
        _deep_update(config, file_config)

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        # OP_ACCOUNT is only a fallback; it never replaces a configured account.
        if not env_name.startswith("SPEEDRUN_") and config[section].get(key):
            continue
        config[section][key] = _coerce_env(value, DEFAULT_CONFIG[section].get(key))

    if cli_overrides:
        for dotted, value in cli_overrides.items():
            if value is None:
                continue
            section, key = dotted.split(".", 1)
            config.setdefault(section, {})[key] = value

    for section, key in _DURATION_KEYS:
        try:
            config[section][key] = parse_duration(config[section][key])
        except ValueError as e:
            raise ConfigError(f"{section}.{key}: {e}") from e

    return config


def _deep_update(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


def _coerce_env(value: str, default):
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class SecretResolver:
    """Resolves ``op://vault/item/field`` references with the 1Password CLI.

    Resolved values are memoised for the lifetime of the resolver, so a
    reference used in several places costs one ``op`` invocation. Create one
    per process and pass it to resolve_secrets().
    """

    def __init__(self, account: str | None = None, timeout: float = 30):
        self._account = account
        self._timeout = timeout
        self._resolved: dict[str, str] = {}

    def resolve(self, reference: str) -> str:
        if reference in self._resolved:
            return self._resolved[reference]

        cmd = ["op", "read", "--no-newline", reference]
        if self._account:
            cmd += ["--account", self._account]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise ConfigError(f"Could not run the 1Password CLI to resolve {reference}: {e}") from e
        if result.returncode != 0:
            raise ConfigError(f"1Password could not resolve {reference}: {result.stderr.strip()}")

        value = result.stdout.strip()
        self._resolved[reference] = value
        logger.debug("Resolved 1Password reference %s", reference)
        return value


def resolve_secrets(config: dict, resolver: SecretResolver) -> dict:
    """Replace every ``op://`` string in the config with its resolved value.

    Does nothing when 1Password integration is disabled (``op.enabled``).
    """
    if not config.get("op", {}).get("enabled", True):
        return config

    def _walk(node):
        if isinstance(node, dict):
            return {k: _walk(v) for k, v in node.items()}
        if isinstance(node, list):
            return [_walk(v) for v in node]
        if isinstance(node, str) and node.startswith("op://"):
            return resolver.resolve(node)
        return node

    return _walk(config)
