"""LLM provider seam used by the model-backed advisor.

The advisor only needs plain text completion: one prompt in, a reply it
can pull JSON out of. Spend is tracked in tokens, which is the unit of
the evolution loop's thinking budget.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal

from pydantic import BaseModel


class LLMMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    content: str | None = None
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class BaseLLMProvider(ABC):
    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        max_tokens: int = 4096,
    ) -> LLMResponse: ...

    async def ask(self, prompt: str, max_tokens: int = 4096, system: str | None = None) -> LLMResponse:
        """Single-turn shortcut: `prompt` as the only user message."""
        return await self.complete(
            [LLMMessage(role="user", content=prompt)],
            system=system,
            max_tokens=max_tokens,
        )
