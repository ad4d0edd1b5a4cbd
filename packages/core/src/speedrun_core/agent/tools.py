"""Tools the analysis agent can call mid-conversation.

The set is closed: github_api, web_fetch and diff_analyzer. Each tool is a
Tool subclass with a name, a description and a JSON schema for its
arguments; the registry hands those to the model and dispatches its calls
back by name.

Results are cached under ``tool:<kind>:<sha256 of name + raw arguments>``, so
an identical call from any PR's analysis is served from the cache. Tools hold
no state besides the shared cache and are safe to call from several threads.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import requests

from speedrun_cache.noop import NoOpCache
from speedrun_core.errors import GatewayError, ToolError

if TYPE_CHECKING:
    from speedrun_cache.base import BaseCache
    from speedrun_core.gh.pull_request import GitHubGateway

logger = logging.getLogger(__name__)

MAX_FETCH_CHARS = 5000
FETCH_TIMEOUT = 30

SENSITIVE_PATTERNS = [
    "auth",
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "config",
    "env",
    ".env",
    "database",
    "db",
    "security",
    "permission",
    "access",
]


class Tool(ABC):
    name: str = ""
    description: str = ""
    cache_kind: str = ""  # "github" | "web" | "diff"

    def __init__(self, cache: BaseCache | None = None):
        self.cache = cache or NoOpCache()

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON schema for the tool's arguments."""

    @abstractmethod
    def _run(self, params: dict) -> str:
        """Do the work for one call. Raise ToolError on bad input or backend failure."""

    def cache_key(self, arguments: str) -> str:
        digest = hashlib.sha256(f"{self.name}:{arguments}".encode()).hexdigest()
        return f"tool:{self.cache_kind}:{digest}"

    def execute(self, arguments: str) -> str:
        """Run the tool for the model's raw JSON ``arguments`` and return text."""
        try:
            params = json.loads(arguments or "{}")
        except json.JSONDecodeError as e:
            raise ToolError(f"invalid parameters: {e}") from e
        if not isinstance(params, dict):
            raise ToolError("invalid parameters: expected a JSON object")

        key = self.cache_key(arguments)
        cached = self.cache.get(key)
        if isinstance(cached, str):
            logger.debug("Tool %s served from cache", self.name)
            return cached

        result = self._run(params)
        self.cache.set(key, result)
        return result


class GitHubTool(Tool):
    name = "github_api"
    description = (
        "Access GitHub API to get PR details, diffs, file contents, and comments. Essential for dependency "
        "updates: check PR comments for links to release notes, changelogs, and security advisories. Use "
        "get_pr_comments to find upstream information that explains what changed between versions."
    )
    cache_kind = "github"

    ACTIONS = ("get_pr_details", "get_pr_diff", "get_file_content", "get_pr_comments")

    def __init__(self, gateway: GitHubGateway, cache: BaseCache | None = None):
        super().__init__(cache)
        self.gateway = gateway

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(self.ACTIONS),
                    "description": "get_pr_details for basic info, get_pr_diff for code changes, "
                    "get_file_content for specific files, get_pr_comments for links to release notes/changelogs",
                },
                "owner": {"type": "string", "description": "Repository owner"},
                "repo": {"type": "string", "description": "Repository name"},
                "pr_number": {"type": "integer", "description": "Pull request number"},
                "path": {"type": "string", "description": "File path (for get_file_content)"},
                "ref": {"type": "string", "description": "Git ref (for get_file_content)"},
            },
            "required": ["action", "owner", "repo"],
        }

    def _run(self, params: dict) -> str:
        action = params.get("action")
        owner = params.get("owner", "")
        repo = params.get("repo", "")
        number = params.get("pr_number") or 0
        try:
            if action == "get_pr_details":
                return self.gateway.get_pr_details(owner, repo, number)
            if action == "get_pr_diff":
                return self.gateway.get_pr_diff(owner, repo, number)
            if action == "get_file_content":
                if not params.get("path"):
                    raise ToolError("path parameter is required for get_file_content")
                return self.gateway.get_file_content(owner, repo, params["path"], params.get("ref"))
            if action == "get_pr_comments":
                return self.gateway.get_pr_comments(owner, repo, number)
        except GatewayError as e:
            raise ToolError(str(e)) from e
        raise ToolError(f"unknown action: {action}")


class WebFetchTool(Tool):
    name = "web_fetch"
    description = (
        "Fetch content from URLs including release notes, changelogs, security advisories, and documentation. "
        "Critical for dependency analysis: fetch upstream project information to understand what actually "
        "changed, not just the diff size. Look for links in PR descriptions and comments."
    )
    cache_kind = "web"

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {"url": {"type": "string", "description": "The URL to fetch"}},
            "required": ["url"],
        }

    def _run(self, params: dict) -> str:
        url = params.get("url")
        if not url:
            raise ToolError("url parameter is required")
        try:
            response = requests.get(url, timeout=FETCH_TIMEOUT)
        except requests.RequestException as e:
            raise ToolError(f"fetching URL: {e}") from e
        # Raising here keeps error pages out of the cache.
        if response.status_code >= 400:
            raise ToolError(f"HTTP error {response.status_code}: {response.reason}")

        content = response.text
        if len(content) > MAX_FETCH_CHARS:
            content = content[:MAX_FETCH_CHARS] + "\n... (truncated)"
        return content


class DiffAnalyzerTool(Tool):
    name = "diff_analyzer"
    description = (
        "Analyze diffs for sensitive file changes and modified paths. For dependency updates: use to "
        "distinguish between vendored dependency files (which should be ignored) and actual source code "
        "changes. Focus analysis on non-vendor paths to identify real code changes."
    )
    cache_kind = "diff"

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "diff": {"type": "string", "description": "The diff content to analyze"},
                "analysis_type": {
                    "type": "string",
                    "enum": ["sensitive_files", "modified_paths"],
                    "description": "sensitive_files to detect security-related changes, modified_paths to "
                    "list all changed files (useful for filtering out vendor/dependencies)",
                },
            },
            "required": ["diff", "analysis_type"],
        }

    def _run(self, params: dict) -> str:
        analysis_type = params.get("analysis_type")
        diff = params.get("diff") or ""
        if analysis_type == "sensitive_files":
            return sensitive_files(diff)
        if analysis_type == "modified_paths":
            return modified_paths(diff)
        raise ToolError(f"unknown analysis type: {analysis_type}")


def sensitive_files(diff: str) -> str:
    findings = []
    for line in diff.split("\n"):
        if not (line.startswith("+++") or line.startswith("---")):
            continue
        lowered = line.lower()
        for pattern in SENSITIVE_PATTERNS:
            if pattern in lowered:
                findings.append(f"Sensitive file pattern '{pattern}' found in: {line}")
    if not findings:
        return "No sensitive file patterns detected in the diff."
    return "Sensitive file analysis:\n" + "\n".join(findings)


def modified_paths(diff: str) -> str:
    paths = []
    for line in diff.split("\n"):
        if not line.startswith("+++"):
            continue
        parts = line.split()
        if len(parts) >= 2:
            path = parts[1]
            paths.append(path[2:] if path.startswith("b/") else path)
    if not paths:
        return "No file paths found in the diff."
    return "Modified files:\n" + "\n".join(paths)


class ToolRegistry:
    """Name → Tool lookup, plus the schemas advertised to the model."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def list_for_model(self) -> list[dict]:
        return [
            {"name": tool.name, "description": tool.description, "parameters": tool.parameters}
            for tool in self._tools.values()
        ]


def build_default_registry(gateway: GitHubGateway, cache: BaseCache | None = None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(GitHubTool(gateway, cache))
    registry.register(WebFetchTool(cache))
    registry.register(DiffAnalyzerTool(cache))
    return registry
