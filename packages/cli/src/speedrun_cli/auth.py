"""GitHub token resolution with gh CLI fallback.

Resolution order (stops at first success):
  1. github.token from the config (includes SPEEDRUN_GITHUB_TOKEN and op:// secrets)
  2. GITHUB_TOKEN environment variable
  3. `gh auth token` (GitHub CLI session, works after `gh auth login`)
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)


def resolve_github_token(configured: str | None = None) -> str | None:
    """Return a GitHub token or None if no valid source is available.

    Never raises; callers should check for None and emit a UsageError.
    """
    if configured:
        return configured

    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            gh_token = result.stdout.strip()
            if gh_token:
                logger.debug("Resolved GitHub token via gh CLI session.")
                return gh_token
    except (FileNotFoundError, subprocess.TimeoutExpired):
        logger.debug("gh CLI unavailable; no token from gh auth.")

    return None
