"""Cache data models and key families.

Keys are deterministic functions of a PR's identity so that every component
(gateway, orchestrator, agent) computes the same key for the same data without
sharing any state.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CacheStats:
    """Entry counts reported by ``speedrun cache stats``."""

    total_entries: int = 0
    expired_entries: int = 0
    database_path: str = ""

    @property
    def valid_entries(self) -> int:
        return self.total_entries - self.expired_entries


def pr_identity(owner: str, repo: str, number: int) -> str:
    return f"{owner}/{repo}#{number}"


def search_key(query: str) -> str:
    return f"search:{query}"


def diff_stats_key(owner: str, repo: str, number: int) -> str:
    return f"diff:{pr_identity(owner, repo, number)}"


def check_status_key(owner: str, repo: str, number: int) -> str:
    return f"checks:{pr_identity(owner, repo, number)}"


def reviews_key(owner: str, repo: str, number: int) -> str:
    return f"reviews:{pr_identity(owner, repo, number)}"


def ai_analysis_key(owner: str, repo: str, number: int, head_sha: str) -> str:
    # Qualified by head SHA: a new commit makes the old analysis unreachable,
    # so no explicit delete is needed when code changes.
    return f"ai:{pr_identity(owner, repo, number)}:{head_sha}"
