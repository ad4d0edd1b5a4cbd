"""Analysis agent: a bounded, tool-augmented conversation with an LLM.

    analyze() → cache lookup (PR + head SHA)
              → build_prompt() + developer instructions
              → _converse(): CONVERSE ⇄ TOOL_CALLS → DONE | ABORTED
              → parse_response() → cache store

The conversation is an explicit state machine with an iteration counter, so
a model that keeps asking for tools ends in ABORTED (ConversationLimitError)
instead of looping forever.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from speedrun_cache.models import ai_analysis_key
from speedrun_cache.noop import NoOpCache
from speedrun_core.backoff import AI_POLICY, BackoffPolicy, DeadlineExceeded
from speedrun_core.errors import ConfigError, ConversationLimitError
from speedrun_core.providers.anthropic import AnthropicProvider
from speedrun_core.providers.openai import OpenAIProvider

if TYPE_CHECKING:
    from speedrun_cache.base import BaseCache
    from speedrun_core.agent.tools import ToolRegistry
    from speedrun_core.gh.models import CheckDetail, CheckStatus, DiffStats, PullRequest, Review
    from speedrun_core.providers.base import BaseProvider, ChatTurn, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TOOL_TIMEOUT = 90.0


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REVIEW = "REVIEW"
    DEEP_REVIEW = "DEEP_REVIEW"


@dataclass
class Analysis:
    recommendation: Recommendation = Recommendation.REVIEW
    risk_level: str = "MEDIUM"
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {
            "recommendation": self.recommendation.value,
            "risk_level": self.risk_level,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Analysis:
        return cls(
            recommendation=Recommendation(data["recommendation"]),
            risk_level=data.get("risk_level") or "MEDIUM",
            reasoning=data.get("reasoning", ""),
        )


@dataclass
class PRData:
    """Everything the agent is told about one PR."""

    owner: str
    repo: str
    number: int
    title: str
    url: str = ""
    head_sha: str = ""
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    checks: list[CheckDetail] = field(default_factory=list)
    reviews: list[Review] = field(default_factory=list)
    description: str = ""

    @classmethod
    def from_enrichment(
        cls, pr: PullRequest, diff_stats: DiffStats, check_status: CheckStatus, reviews: list[Review]
    ) -> PRData:
        return cls(
            owner=pr.owner,
            repo=pr.repo,
            number=pr.number,
            title=pr.title,
            url=pr.html_url,
            head_sha=pr.head_sha,
            additions=diff_stats.additions,
            deletions=diff_stats.deletions,
            changed_files=diff_stats.files,
            checks=list(check_status.details),
            reviews=list(reviews),
            description=pr.body,
        )


class ConversationState(Enum):
    CONVERSE = "converse"
    TOOL_CALLS = "tool_calls"
    DONE = "done"
    ABORTED = "aborted"


PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


def load_developer_message() -> str:
    return (PROMPTS_DIR / "developer.md").read_text(encoding="utf-8")


def build_prompt(pr: PRData) -> str:
    """Render the per-PR user message."""
    lines = [
        f"Please analyze pull request #{pr.number} in {pr.owner}/{pr.repo}.",
        "",
        f"Title: {pr.title}",
    ]
    if pr.url:
        lines.append(f"URL: {pr.url}")
    lines += [
        "",
        "## Size",
        f"+{pr.additions} -{pr.deletions} across {pr.changed_files} files "
        f"({pr.additions + pr.deletions} lines changed)",
        "",
        "## CI checks",
    ]
    if pr.checks:
        for check in pr.checks:
            line = f"- {check.name}: {check.status}"
            if check.description:
                line += f" ({check.description})"
            lines.append(line)
    else:
        lines.append("No checks reported.")

    lines += ["", "## Reviews"]
    if pr.reviews:
        lines += [f"- {review.user}: {review.state}" for review in pr.reviews]
    else:
        lines.append("No reviews yet.")

    if pr.description:
        lines += ["", "## Description", pr.description]
    return "\n".join(lines)


def parse_response(content: str) -> Analysis:
    """Pull RECOMMENDATION / RISK_LEVEL / REASONING lines out of free text.

    Missing or unrecognized fields fall back to REVIEW and MEDIUM; this
    never raises.
    """
    analysis = Analysis()
    for raw_line in (content or "").split("\n"):
        line = raw_line.strip()
        if line.startswith("RECOMMENDATION:"):
            value = line[len("RECOMMENDATION:") :].strip()
            try:
                analysis.recommendation = Recommendation(value)
            except ValueError:
                pass  # unknown value keeps the REVIEW default
        elif line.startswith("RISK_LEVEL:"):
            analysis.risk_level = line[len("RISK_LEVEL:") :].strip()
        elif line.startswith("REASONING:"):
            analysis.reasoning = line[len("REASONING:") :].strip()
    return analysis


class AnalysisAgent:
    def __init__(
        self,
        provider: BaseProvider,
        tool_registry: ToolRegistry | None = None,
        cache: BaseCache | None = None,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.provider = provider
        self.tool_registry = tool_registry
        self.cache = cache or NoOpCache()
        # Longer than the github backoff budget so a tool's own retries can finish.
        self.tool_timeout = tool_timeout
        self.max_iterations = max_iterations
        self._developer_message = load_developer_message()
        self._tool_pool = concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="speedrun-tool")

    def analyze(self, pr_data: PRData, timeout: float | None = None) -> Analysis:
        """Return the recommendation for ``pr_data``, from cache when the head SHA was seen before.

        Raises ProviderError when the LLM keeps failing, ConversationLimitError
        when the iteration cap is hit and DeadlineExceeded when ``timeout``
        runs out.
        """
        key = ai_analysis_key(pr_data.owner, pr_data.repo, pr_data.number, pr_data.head_sha) if pr_data.head_sha else None
        if key:
            cached = self.cache.get(key)
            if cached is not None:
                try:
                    analysis = Analysis.from_dict(cached)
                except (KeyError, TypeError, ValueError):
                    logger.debug("Deleting invalid cached analysis %s", key)
                    self.cache.delete(key)
                else:
                    logger.debug("Analysis cache hit for %s", key)
                    return analysis

        messages = [
            {"role": "system", "content": self._developer_message},
            {"role": "user", "content": build_prompt(pr_data)},
        ]
        deadline = time.monotonic() + timeout if timeout else None
        content = self._converse(messages, deadline)
        analysis = parse_response(content)
        logger.info(
            "Analyzed %s/%s#%d: %s (%s risk)",
            pr_data.owner,
            pr_data.repo,
            pr_data.number,
            analysis.recommendation.value,
            analysis.risk_level,
        )

        if key:
            self.cache.set(key, analysis.to_dict())
        return analysis

    def close(self) -> None:
        self._tool_pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------ #
    # Conversation state machine                                           #
    # ------------------------------------------------------------------ #

    def _converse(self, messages: list[dict], deadline: float | None) -> str:
        tools = self.tool_registry.list_for_model() if self.tool_registry else []
        state = ConversationState.CONVERSE
        iterations = 0
        turn: ChatTurn | None = None

        while True:
            if state is ConversationState.CONVERSE:
                if iterations >= self.max_iterations:
                    state = ConversationState.ABORTED
                    continue
                iterations += 1
                logger.debug("Conversation iteration %d", iterations)
                turn = self.provider.complete(messages, tools, timeout=_remaining(deadline))
                messages.append({"role": "assistant", "content": turn.content, "tool_calls": turn.tool_calls})
                state = ConversationState.TOOL_CALLS if turn.tool_calls else ConversationState.DONE

            elif state is ConversationState.TOOL_CALLS:
                logger.debug("Processing %d tool call(s)", len(turn.tool_calls))
                for call in turn.tool_calls:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "name": call.name,
                            "content": self._execute_tool(call),
                        }
                    )
                state = ConversationState.CONVERSE

            elif state is ConversationState.DONE:
                return turn.content

            else:
                raise ConversationLimitError(f"conversation exceeded maximum iterations ({self.max_iterations})")

    def _execute_tool(self, call: ToolCall) -> str:
        """Run one tool call. Failures become ``"Error: ..."`` text for the model."""
        tool = self.tool_registry.get(call.name) if self.tool_registry else None
        if tool is None:
            logger.error("Tool call failed: unknown tool %s", call.name)
            return f"Error: unknown tool: {call.name}"

        logger.debug("Executing tool %s with %s", call.name, call.arguments)
        future = self._tool_pool.submit(tool.execute, call.arguments)
        try:
            return future.result(timeout=self.tool_timeout)
        except concurrent.futures.TimeoutError:
            logger.error("Tool %s timed out after %.0fs", call.name, self.tool_timeout)
            return f"Error: tool {call.name} timed out after {self.tool_timeout:.0f}s"
        except Exception as e:
            logger.error("Tool %s failed: %s", call.name, e)
            return f"Error: {e}"


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DeadlineExceeded("analysis timed out")
    return remaining


def build_provider(config: dict, policy: BackoffPolicy = AI_POLICY) -> BaseProvider:
    """Create the LLM provider named by ``ai.provider``."""
    ai = config["ai"]
    kwargs = {
        "api_key": ai.get("api_key"),
        "model": ai.get("model"),
        "base_url": ai.get("base_url"),
        "timeout": ai.get("timeout", 90),
        "policy": policy,
    }
    provider = ai.get("provider", "openai")
    if provider == "openai":
        return OpenAIProvider(**kwargs)
    if provider == "anthropic":
        return AnthropicProvider(**kwargs)
    raise ConfigError(f"Unknown AI provider: {provider!r}. Choose 'openai' or 'anthropic'.")
