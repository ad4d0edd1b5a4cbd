"""Base LLM provider implementing the Template Method pattern.

All providers share the same call algorithm:
    complete() → retry(ai policy) → _call_api()   ← only this differs per provider

Subclasses implement three things only:
  - __init__: build and store the SDK client
  - _call_api: translate the neutral messages, make one raw API call and
    translate the reply back into a ChatTurn
  - _is_transient: which SDK errors are worth retrying

Messages use one provider-neutral shape so the agent never sees SDK types:
    {"role": "system" | "user", "content": str}
    {"role": "assistant", "content": str, "tool_calls": [ToolCall, ...]}
    {"role": "tool", "tool_call_id": str, "name": str, "content": str}

Tool schemas are ``{"name", "description", "parameters"}`` dicts as produced
by ToolRegistry.list_for_model().
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from speedrun_core.backoff import AI_POLICY, BackoffPolicy, DeadlineExceeded, retry
from speedrun_core.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text, exactly as the model produced it


@dataclass
class ChatTurn:
    """One assistant reply: final text, or a request to run tools."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


class BaseProvider(ABC):
    MAX_TOKENS: int = 4096
    TEMPERATURE: float = 0.2

    def __init__(self, model: str, policy: BackoffPolicy = AI_POLICY):
        self.model = model
        self.policy = policy

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def complete(self, messages: list[dict], tools: list[dict] | None = None, timeout: float | None = None) -> ChatTurn:
        """Send the whole conversation and return the model's next turn.

        Transient failures are retried with the ai backoff policy; when the
        budget runs out (or a non-transient error occurs) ProviderError is
        raised, chained to the SDK error.
        """
        try:
            return retry(
                lambda: self._call_api(messages, tools or []),
                self.policy,
                retry_on=self._is_transient,
                timeout=timeout,
                description=f"{self.__class__.__name__} API",
            )
        except ProviderError:
            raise
        except DeadlineExceeded as e:
            raise ProviderError(str(e)) from e
        except Exception as e:
            raise ProviderError(f"{self.__class__.__name__} API failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, messages: list[dict], tools: list[dict]) -> ChatTurn:
        """Make a single API call. Raise on failure; complete() handles retries."""

    @abstractmethod
    def _is_transient(self, error: Exception) -> bool:
        """True when ``error`` is a rate limit, overload, 5xx or network failure."""
