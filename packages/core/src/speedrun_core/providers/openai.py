from __future__ import annotations

import openai
from openai import OpenAI

from speedrun_core.backoff import AI_POLICY, BackoffPolicy
from speedrun_core.errors import ProviderError
from speedrun_core.providers.base import BaseProvider, ChatTurn, ToolCall


class OpenAIProvider(BaseProvider):
    """Chat Completions with function tools.

    ``base_url`` points the client at an OpenAI-compatible LLM gateway.
    """

    MODEL = "gpt-4o"
    # Low temperature keeps the RECOMMENDATION/RISK_LEVEL lines stable.
    TEMPERATURE = 0.2

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 90,
        policy: BackoffPolicy = AI_POLICY,
    ):
        super().__init__(model or self.MODEL, policy)
        # Retries are ours (ai backoff policy), not the SDK's.
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def _call_api(self, messages: list[dict], tools: list[dict]) -> ChatTurn:
        kwargs = {}
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t["description"],
                        "parameters": t["parameters"],
                    },
                }
                for t in tools
            ]
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[_to_openai(m) for m in messages],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            **kwargs,
        )
        if not response.choices:
            raise ProviderError("OpenAI returned no choices")

        message = response.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in message.tool_calls or []
        ]
        return ChatTurn(content=message.content or "", tool_calls=calls)

    def _is_transient(self, error: Exception) -> bool:
        if isinstance(error, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
            return True
        return isinstance(error, openai.APIStatusError) and error.status_code >= 500


def _to_openai(message: dict) -> dict:
    role = message["role"]
    if role == "assistant" and message.get("tool_calls"):
        return {
            "role": "assistant",
            "content": message.get("content") or None,
            "tool_calls": [
                {"id": tc.id, "type": "function", "function": {"name": tc.name, "arguments": tc.arguments}}
                for tc in message["tool_calls"]
            ],
        }
    if role == "tool":
        return {"role": "tool", "tool_call_id": message["tool_call_id"], "content": message["content"]}
    return {"role": role, "content": message["content"]}
