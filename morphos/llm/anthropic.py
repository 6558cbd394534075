"""Claude provider for the evolution advisor."""

from __future__ import annotations

import anthropic

from morphos.llm.base import BaseLLMProvider, LLMMessage, LLMResponse

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AnthropicProvider(BaseLLMProvider):
    """Text completions through the async Anthropic SDK.

    SDK errors propagate; the advisor falls back to heuristics on any of them.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_retries: int = 2,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=max_retries)

    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        request: dict = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [m.model_dump() for m in messages],
        }
        if system:
            request["system"] = system

        reply = await self._client.messages.create(**request)

        # Only text blocks carry the answer; anything else is ignored
        text = "".join(block.text for block in reply.content if block.type == "text")
        return LLMResponse(
            content=text or None,
            stop_reason=reply.stop_reason or "",
            input_tokens=reply.usage.input_tokens,
            output_tokens=reply.usage.output_tokens,
        )
