"""Anthropic LLM provider."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import tiktoken
from anthropic import APIConnectionError, APIError, APIStatusError, AsyncAnthropic, RateLimitError

from llamaclick.config import LLMConfig
from llamaclick.core.llm.base import LLMProvider
from llamaclick.core.llm.types import LLMMessage, LLMResponse
from llamaclick.errors import ProviderError
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)


class AnthropicProvider(LLMProvider):
    def __init__(self, config: LLMConfig) -> None:
        self._config = config
        self._client = AsyncAnthropic(api_key=config.api_key or None, timeout=config.request_timeout)
        self._model = config.model
        self._tokenizer = tiktoken.get_encoding("cl100k_base")

    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._call_with_retry(kwargs)
        except APIError as e:
            raise ProviderError(f"anthropic request failed: {e}") from e
        return self._parse_response(response)

    def count_tokens(self, text: str) -> int:
        return len(self._tokenizer.encode(text))

    async def close(self) -> None:
        await self._client.close()

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        # Anthropic takes the system prompt out of band
        system_parts = [system] if system else []
        api_messages = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                api_messages.append({"role": msg.role, "content": msg.content})

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": api_messages,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": temperature if temperature is not None else self._config.temperature,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        return kwargs

    async def _call_with_retry(
        self, kwargs: dict[str, Any], max_retries: int = 3
    ) -> Any:
        for attempt in range(max_retries + 1):
            try:
                return await self._client.messages.create(**kwargs)
            except RateLimitError:
                if attempt == max_retries:
                    raise
                wait = (2 ** attempt) + random.uniform(0, 1)
                log.warning("rate_limited", attempt=attempt, wait=wait)
                await asyncio.sleep(wait)
            except APIConnectionError:
                if attempt == max_retries:
                    raise
                wait = (2 ** attempt) + random.uniform(0, 1)
                log.warning("api_connect_retry", attempt=attempt, wait=wait)
                await asyncio.sleep(wait)
            except APIStatusError as e:
                if attempt == max_retries or e.status_code < 500:
                    raise
                wait = (2 ** attempt) + random.uniform(0, 1)
                log.warning("api_error_retry", status=e.status_code, attempt=attempt)
                await asyncio.sleep(wait)
        raise RuntimeError("Unreachable")

    def _parse_response(self, response: Any) -> LLMResponse:
        result = LLMResponse(
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        for block in response.content:
            if block.type == "text":
                result.content += block.text
        return result
