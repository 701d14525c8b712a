"""LLM provider abstract base class."""

from __future__ import annotations

from abc import ABC, abstractmethod

from llamaclick.core.llm.types import LLMMessage, LLMResponse


class LLMProvider(ABC):
    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Chat-style completion. Raises ProviderError on transport failure."""

    @abstractmethod
    def count_tokens(self, text: str) -> int: ...

    async def prompt(
        self,
        text: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        response = await self.complete(
            messages=[LLMMessage(role="user", content=text)],
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.content

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
