"""GitHub gateway: the only place speedrun talks to the GitHub API.

Every read goes cache first, then PyGithub wrapped in the github backoff
policy. Mutations (approve, merge, auto-merge) are not retried; on success
they invalidate the PR's cached reads because the server-side state changed.
"""

from __future__ import annotations

import itertools
import logging
import time
from typing import TYPE_CHECKING, Callable, TypeVar
from urllib.parse import urlparse

import requests
from github import Auth, Github, GithubException, RateLimitExceededException

from speedrun_cache.models import (
    ai_analysis_key,
    check_status_key,
    diff_stats_key,
    reviews_key,
    search_key,
)
from speedrun_cache.noop import NoOpCache
from speedrun_core.backoff import BackoffConfig, DeadlineExceeded, retry
from speedrun_core.errors import GatewayError
from speedrun_core.gh.models import CheckDetail, CheckStatus, DiffStats, PullRequest, Review

if TYPE_CHECKING:
    from speedrun_cache.base import BaseCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEARCH_LIMIT = 100
MAX_DIFF_CHARS = 8000
MAX_FILE_CHARS = 5000
MAX_COMMENTS = 10

_FAILED_CONCLUSIONS = {"failure", "cancelled", "timed_out"}
_PASSING_CONCLUSIONS = {"neutral", "skipped"}

# Substrings of GitHub auto-merge errors and the message shown instead.
_AUTO_MERGE_MESSAGES = [
    (
        "pull request is in clean status",
        "Cannot enable auto-merge: pull request has no failing checks to resolve. Auto-merge is only "
        "available when there are pending or failing checks that need to pass first.",
    ),
    (
        "pull request is not mergeable",
        "Cannot enable auto-merge: pull request is not in a mergeable state. This could be due to merge "
        "conflicts, required status checks failing, or branch protection rules.",
    ),
    ("auto-merge is already enabled", "Auto-merge is already enabled for this pull request."),
    ("pull request is closed", "Cannot enable auto-merge: pull request is closed."),
    ("pull request is merged", "Cannot enable auto-merge: pull request is already merged."),
    (
        "pull request is draft",
        "Cannot enable auto-merge: pull request is in draft status. Please mark it as ready for review first.",
    ),
    (
        "permission",
        "Cannot enable auto-merge: insufficient permissions. You may need write access to the repository "
        "or admin permissions depending on branch protection settings.",
    ),
    (
        "branch protection",
        "Cannot enable auto-merge: branch protection rules prevent auto-merge. Check the repository's "
        "branch protection settings.",
    ),
]

CLEAN_STATUS_MARKER = "no failing checks to resolve"


class AutoMergeError(GatewayError):
    """GitHub refused to enable auto-merge. The message is user-facing."""

    @property
    def is_clean_status(self) -> bool:
        """True when the PR has nothing left to wait for and can be merged directly."""
        return CLEAN_STATUS_MARKER in str(self)


# ---------------------------------------------------------------------- #
# Check status policy                                                      #
# ---------------------------------------------------------------------- #


def convert_check_run_status(status: str | None, conclusion: str | None) -> str:
    """Map a check run's status/conclusion pair to success/failure/pending/error."""
    if status != "completed":
        return "pending"
    if conclusion == "success" or conclusion in _PASSING_CONCLUSIONS:
        return "success"
    if conclusion in _FAILED_CONCLUSIONS:
        return "failure"
    return "error"


def aggregate_check_states(details: list[CheckDetail]) -> str:
    """Overall state: failure beats pending beats success. No checks is pending."""
    if not details:
        return "pending"
    states = {d.status for d in details}
    if states & {"failure", "error"}:
        return "failure"
    if states & {"pending", "in_progress"}:
        return "pending"
    return "success"


def format_check_description(details: list[CheckDetail]) -> str:
    if not details:
        return "No checks found"
    passing = sum(1 for d in details if d.status == "success")
    failing = sum(1 for d in details if d.status in ("failure", "error"))
    pending = sum(1 for d in details if d.status in ("pending", "in_progress"))
    return f"{len(details)} checks: {passing} passing, {failing} failing, {pending} pending"


def filter_checks(details: list[CheckDetail], required=None, ignored=None) -> list[CheckDetail]:
    """Keep only ``required`` checks when given; otherwise drop ``ignored`` ones."""
    if required:
        wanted = set(required)
        return [d for d in details if d.name in wanted]
    if ignored:
        unwanted = set(ignored)
        return [d for d in details if d.name not in unwanted]
    return list(details)


def friendly_auto_merge_message(message: str) -> str | None:
    lowered = message.lower()
    for needle, friendly in _AUTO_MERGE_MESSAGES:
        if needle in lowered:
            return friendly
    return None


def is_transient(error: Exception) -> bool:
    """True for errors worth retrying: 5xx, 429, rate limits and network failures."""
    if isinstance(error, RateLimitExceededException):
        return True
    if isinstance(error, GithubException):
        if error.status is None:
            return True
        if error.status >= 500 or error.status == 429:
            return True
        return error.status == 403 and "rate limit" in str(error).lower()
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


def _parse_issue_url(url: str) -> tuple[str, str]:
    # https://api.github.com/repos/OWNER/REPO/issues/NUMBER
    parts = urlparse(url).path.strip("/").split("/")
    if len(parts) < 4 or parts[0] != "repos":
        raise ValueError(f"unexpected issue URL: {url}")
    return parts[1], parts[2]


def _truncate(text: str, limit: int, marker: str) -> str:
    if len(text) > limit:
        return text[:limit] + marker
    return text


# ---------------------------------------------------------------------- #
# Gateway                                                                  #
# ---------------------------------------------------------------------- #


class GitHubGateway:
    """Typed, cached, retried access to the PRs matching one search query."""

    def __init__(
        self,
        token: str,
        search_query: str = "is:open is:pr",
        cache: BaseCache | None = None,
        backoff: BackoffConfig | None = None,
        checks: dict | None = None,
        timeout: float = 60,
        client: Github | None = None,
    ):
        self.search_query = search_query
        self.cache = cache or NoOpCache()
        self._policy = (backoff or BackoffConfig()).github
        checks = checks or {}
        self._required = list(checks.get("required") or [])
        self._ignored = list(checks.get("ignored") or [])
        self._gh = client or Github(auth=Auth.Token(token), timeout=int(timeout))

    # ------------------------------------------------------------------ #
    # Plumbing                                                             #
    # ------------------------------------------------------------------ #

    def _call(self, operation: Callable[[], T], description: str, timeout: float | None = None) -> T:
        try:
            return retry(
                operation,
                self._policy,
                retry_on=is_transient,
                timeout=timeout,
                description=f"GitHub {description}",
            )
        except (GithubException, requests.RequestException, DeadlineExceeded) as e:
            raise GatewayError(f"GitHub {description} failed: {e}") from e

    def _pull(self, owner: str, repo: str, number: int):
        return self._gh.get_repo(f"{owner}/{repo}", lazy=True).get_pull(number)

    def _cached(self, key: str, decode: Callable[[object], T | None]) -> T | None:
        """Return the decoded cache entry, deleting it when it fails validation."""
        raw = self.cache.get(key)
        if raw is None:
            logger.debug("Cache miss for %s", key)
            return None
        try:
            value = decode(raw)
        except (KeyError, TypeError, ValueError):
            value = None
        if value is None:
            logger.debug("Deleting invalid cache entry %s", key)
            self.cache.delete(key)
            return None
        logger.debug("Cache hit for %s", key)
        return value

    # ------------------------------------------------------------------ #
    # Search                                                               #
    # ------------------------------------------------------------------ #

    def authenticated_user(self) -> str:
        return self._call(lambda: self._gh.get_user().login, "get authenticated user")

    def search(self, timeout: float | None = None) -> list[PullRequest]:
        """Return open, unmerged PRs for the configured query (cached)."""
        key = search_key(self.search_query)
        cached = self._cached(key, _decode_pr_list)
        if cached is not None:
            return cached
        return self._search_and_cache(key, timeout)

    def search_fresh(self, timeout: float | None = None) -> list[PullRequest]:
        """Like search(), but always hits GitHub and re-populates the cache."""
        return self._search_and_cache(search_key(self.search_query), timeout)

    def _search_and_cache(self, key: str, timeout: float | None) -> list[PullRequest]:
        # One deadline covers the search and every head SHA lookup after it.
        deadline = None if timeout is None else time.monotonic() + timeout

        def _search():
            results = self._gh.search_issues(self.search_query, sort="created", order="desc")
            return list(itertools.islice(results, SEARCH_LIMIT))

        issues = self._call(_search, f"search {self.search_query!r}", timeout)

        prs = []
        for issue in issues:
            links = issue.pull_request
            if links is None or getattr(links, "merged_at", None):
                continue
            try:
                owner, repo = _parse_issue_url(issue.url)
            except ValueError as e:
                logger.debug("Skipping issue #%s: %s", issue.number, e)
                continue
            pr = PullRequest(
                owner=owner,
                repo=repo,
                number=issue.number,
                title=issue.title,
                updated_at=issue.updated_at.isoformat() if issue.updated_at else "",
                author=issue.user.login if issue.user else "",
                labels=[label.name for label in issue.labels],
                body=issue.body or "",
                html_url=issue.html_url,
            )
            pr.head_sha = self._resolve_head_sha(pr, _remaining(deadline))
            prs.append(pr)

        logger.info("Search %r returned %d pull requests", self.search_query, len(prs))
        self.cache.set(key, [pr.to_dict() for pr in prs])
        return prs

    def _resolve_head_sha(self, pr: PullRequest, timeout: float | None) -> str:
        # A PR without a SHA is still listed; AI analysis is skipped for it.
        if timeout is not None and timeout <= 0:
            logger.debug("Search deadline passed; head SHA for %s left unresolved", pr.identity)
            return ""
        try:
            return self._call(
                lambda: self._pull(pr.owner, pr.repo, pr.number).head.sha,
                f"get head SHA for {pr.identity}",
                timeout,
            )
        except GatewayError as e:
            logger.debug("Could not resolve head SHA for %s: %s", pr.identity, e)
            return ""

    # ------------------------------------------------------------------ #
    # Enrichment reads                                                     #
    # ------------------------------------------------------------------ #

    def get_diff_stats(self, pr: PullRequest, timeout: float | None = None) -> DiffStats:
        key = diff_stats_key(pr.owner, pr.repo, pr.number)
        cached = self._cached(key, _decode_diff_stats)
        if cached is not None:
            return cached

        pull = self._call(lambda: self._pull(pr.owner, pr.repo, pr.number), f"get diff stats for {pr.identity}", timeout)
        stats = DiffStats(additions=pull.additions, deletions=pull.deletions, files=pull.changed_files)
        if stats.is_valid():
            self.cache.set(key, stats.to_dict())
        return stats

    def get_check_status(self, pr: PullRequest, timeout: float | None = None) -> CheckStatus:
        """Combined status of check runs and legacy commit statuses for the PR head.

        Also refreshes ``pr.head_sha`` from the PR details.
        """
        key = check_status_key(pr.owner, pr.repo, pr.number)
        cached = self._cached(key, _decode_check_status)
        if cached is not None:
            if not pr.head_sha:
                pr.head_sha = self._resolve_head_sha(pr, timeout)
            return cached

        pull = self._call(lambda: self._pull(pr.owner, pr.repo, pr.number), f"get details for {pr.identity}", timeout)
        pr.head_sha = pull.head.sha
        repo = self._gh.get_repo(pr.full_name, lazy=True)

        def _gather():
            commit = repo.get_commit(pr.head_sha)
            details = []
            for run in commit.get_check_runs():
                details.append(
                    CheckDetail(
                        name=run.name,
                        status=convert_check_run_status(run.status, run.conclusion),
                        description=(run.output.summary or "") if run.output else "",
                        url=run.html_url or "",
                    )
                )
            for status in commit.get_combined_status().statuses:
                details.append(
                    CheckDetail(
                        name=status.context,
                        status=status.state,
                        description=status.description or "",
                        url=status.target_url or "",
                    )
                )
            return details

        details = filter_checks(
            self._call(_gather, f"get checks for {pr.identity}", timeout),
            required=self._required,
            ignored=self._ignored,
        )
        result = CheckStatus(
            state=aggregate_check_states(details),
            description=format_check_description(details),
            details=details,
        )
        if result.is_valid():
            self.cache.set(key, result.to_dict())
        return result

    def get_reviews(self, pr: PullRequest, timeout: float | None = None) -> list[Review]:
        key = reviews_key(pr.owner, pr.repo, pr.number)
        cached = self._cached(key, _decode_reviews)
        if cached is not None:
            return cached

        def _list():
            return [
                Review(state=r.state, user=r.user.login if r.user else "", body=r.body or "")
                for r in self._pull(pr.owner, pr.repo, pr.number).get_reviews()
            ]

        reviews = self._call(_list, f"get reviews for {pr.identity}", timeout)
        self.cache.set(key, [r.to_dict() for r in reviews])
        return reviews

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def approve(self, pr: PullRequest) -> None:
        try:
            self._pull(pr.owner, pr.repo, pr.number).create_review(body="LGTM", event="APPROVE")
        except (GithubException, requests.RequestException) as e:
            logger.error("Failed to approve %s: %s", pr.identity, e)
            raise GatewayError(f"Failed to approve {pr.identity}: {e}") from e
        logger.info("Approved %s", pr.identity)
        self.invalidate(pr)

    def merge(self, pr: PullRequest, method: str = "squash") -> None:
        method = (method or "squash").lower()
        try:
            status = self._pull(pr.owner, pr.repo, pr.number).merge(merge_method=method)
        except (GithubException, requests.RequestException) as e:
            logger.error("Failed to merge %s: %s", pr.identity, e)
            raise GatewayError(f"Failed to merge {pr.identity}: {e}") from e
        if not status.merged:
            raise GatewayError(f"PR was not merged - {status.message}")
        logger.info("Merged %s (%s) as %s", pr.identity, method, status.sha)
        self.invalidate(pr)

    def enable_auto_merge(self, pr: PullRequest, method: str = "SQUASH") -> None:
        """Turn on auto-merge. Raises AutoMergeError with a readable message when refused."""
        method = (method or "SQUASH").upper()
        try:
            self._pull(pr.owner, pr.repo, pr.number).enable_automerge(merge_method=method)
        except GithubException as e:
            friendly = friendly_auto_merge_message(str(e))
            logger.error("Failed to enable auto-merge for %s: %s", pr.identity, e)
            raise AutoMergeError(friendly or f"Failed to enable auto-merge: {e}") from e
        except requests.RequestException as e:
            logger.error("Failed to enable auto-merge for %s: %s", pr.identity, e)
            raise GatewayError(f"Failed to enable auto-merge: {e}") from e
        logger.info("Enabled auto-merge for %s (%s)", pr.identity, method)
        self.invalidate(pr)

    def invalidate(self, pr: PullRequest) -> None:
        """Drop every cached read for the PR: diff, checks, reviews and analysis."""
        self.cache.delete(diff_stats_key(pr.owner, pr.repo, pr.number))
        self.cache.delete(check_status_key(pr.owner, pr.repo, pr.number))
        self.cache.delete(reviews_key(pr.owner, pr.repo, pr.number))
        if pr.head_sha:
            self.cache.delete(ai_analysis_key(pr.owner, pr.repo, pr.number, pr.head_sha))

    def invalidate_commit_related_cache(self, pr: PullRequest) -> None:
        """Drop the entries that depend on the code: diff stats and checks."""
        self.cache.delete(diff_stats_key(pr.owner, pr.repo, pr.number))
        self.cache.delete(check_status_key(pr.owner, pr.repo, pr.number))
        logger.debug("Invalidated commit-related cache for %s", pr.identity)

    # ------------------------------------------------------------------ #
    # Tool-support reads (text for the analysis agent)                     #
    # ------------------------------------------------------------------ #

    def get_pr_details(self, owner: str, repo: str, number: int) -> str:
        pull = self._call(lambda: self._pull(owner, repo, number), f"get PR details for {owner}/{repo}#{number}")
        lines = [
            f"PR #{pull.number}: {pull.title}",
            f"State: {pull.state}",
            f"Author: {pull.user.login if pull.user else ''}",
            f"Additions: {pull.additions}, Deletions: {pull.deletions}, Changed Files: {pull.changed_files}",
            f"Mergeable: {pull.mergeable}",
        ]
        if pull.body:
            lines.append(f"Description: {pull.body}")
        return "\n".join(lines) + "\n"

    def get_pr_diff(self, owner: str, repo: str, number: int) -> str:
        def _diff():
            parts = []
            for f in self._pull(owner, repo, number).get_files():
                parts.append(f"diff --git a/{f.filename} b/{f.filename}\n--- a/{f.filename}\n+++ b/{f.filename}")
                if f.patch:
                    parts.append(f.patch)
            return "\n".join(parts)

        diff = self._call(_diff, f"get diff for {owner}/{repo}#{number}")
        return _truncate(diff, MAX_DIFF_CHARS, "\n... (diff truncated due to size)")

    def get_file_content(self, owner: str, repo: str, path: str, ref: str | None = None) -> str:
        ref = ref or "HEAD"
        content = self._call(
            lambda: self._gh.get_repo(f"{owner}/{repo}", lazy=True).get_contents(path, ref=ref),
            f"get {path}@{ref} in {owner}/{repo}",
        )
        if isinstance(content, list):
            raise GatewayError(f"{path} is a directory in {owner}/{repo}")
        text = content.decoded_content.decode("utf-8", errors="replace")
        return _truncate(text, MAX_FILE_CHARS, "\n... (file truncated due to size)")

    def get_pr_comments(self, owner: str, repo: str, number: int) -> str:
        comments = self._call(
            lambda: list(itertools.islice(self._pull(owner, repo, number).get_review_comments(), MAX_COMMENTS + 1)),
            f"get comments for {owner}/{repo}#{number}",
        )
        if not comments:
            return "No comments found on this PR."

        out = [f"Found {len(comments)} comments:\n"]
        for i, comment in enumerate(comments):
            if i >= MAX_COMMENTS:
                out.append("... (remaining comments truncated)")
                break
            author = comment.user.login if comment.user else ""
            out.append(f"Comment by {author}:\n{comment.body}\n")
        return "\n".join(out) + "\n"


# ---------------------------------------------------------------------- #
# Cache decoding (None = corrupt)                                          #
# ---------------------------------------------------------------------- #


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _decode_pr_list(raw) -> list[PullRequest] | None:
    if not isinstance(raw, list):
        return None
    return [PullRequest.from_dict(item) for item in raw]


def _decode_diff_stats(raw) -> DiffStats | None:
    if not isinstance(raw, dict):
        return None
    stats = DiffStats.from_dict(raw)
    return stats if stats.is_valid() else None


def _decode_check_status(raw) -> CheckStatus | None:
    if not isinstance(raw, dict):
        return None
    status = CheckStatus.from_dict(raw)
    return status if status.is_valid() else None


def _decode_reviews(raw) -> list[Review] | None:
    if not isinstance(raw, list):
        return None
    return [Review.from_dict(item) for item in raw]
