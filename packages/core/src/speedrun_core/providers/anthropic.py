from __future__ import annotations

import json

import anthropic
from anthropic import Anthropic
from anthropic.types import TextBlock, ToolUseBlock

from speedrun_core.backoff import AI_POLICY, BackoffPolicy
from speedrun_core.providers.base import BaseProvider, ChatTurn, ToolCall


class AnthropicProvider(BaseProvider):
    MODEL = "claude-sonnet-4-20250514"
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
        self.client = Anthropic(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def _call_api(self, messages: list[dict], tools: list[dict]) -> ChatTurn:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        kwargs = {}
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {"name": t["name"], "description": t["description"], "input_schema": t["parameters"]} for t in tools
            ]
        response = self.client.messages.create(
            model=self.model,
            messages=_to_anthropic(messages),
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            **kwargs,
        )
        text = "".join(block.text for block in response.content if isinstance(block, TextBlock)).strip()
        calls = [
            ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
            for block in response.content
            if isinstance(block, ToolUseBlock)
        ]
        return ChatTurn(content=text, tool_calls=calls)

    def _is_transient(self, error: Exception) -> bool:
        if isinstance(error, (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)):
            return True
        # 529 is Anthropic's "overloaded".
        return isinstance(error, anthropic.APIStatusError) and error.status_code >= 500


def _to_anthropic(messages: list[dict]) -> list[dict]:
    """Translate neutral messages; consecutive tool results share one user turn."""
    out: list[dict] = []
    for m in messages:
        role = m["role"]
        if role == "system":
            continue
        if role == "tool":
            block = {"type": "tool_result", "tool_use_id": m["tool_call_id"], "content": m["content"]}
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue
        if role == "assistant" and m.get("tool_calls"):
            blocks: list[dict] = []
            if m.get("content"):
                blocks.append({"type": "text", "text": m["content"]})
            for tc in m["tool_calls"]:
                try:
                    tool_input = json.loads(tc.arguments or "{}")
                except json.JSONDecodeError:
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tool_input})
            out.append({"role": "assistant", "content": blocks})
            continue
        out.append({"role": role, "content": m["content"]})
    return out
