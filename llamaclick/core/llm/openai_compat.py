"""OpenAI-compatible provider (OpenAI, Ollama, llama.cpp, vllm, ...)."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import httpx
import tiktoken

from llamaclick.config import LLMConfig
from llamaclick.core.llm.base import LLMProvider
from llamaclick.core.llm.types import LLMMessage, LLMResponse
from llamaclick.errors import ProviderError
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

_OLLAMA_DEFAULT = "http://localhost:11434/v1"


class OpenAICompatibleProvider(LLMProvider):
    def __init__(self, config: LLMConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        endpoint = config.endpoint
        if config.provider == "ollama" and "api.openai.com" in endpoint:
            endpoint = _OLLAMA_DEFAULT
        self._endpoint = endpoint.rstrip("/")
        self._model = config.model
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            timeout=config.request_timeout, base_url=self._endpoint, headers=headers,
        )
        self._tokenizer = tiktoken.get_encoding("cl100k_base")

    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        api_messages: list[dict[str, Any]] = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend({"role": m.role, "content": m.content} for m in messages)

        body: dict[str, Any] = {
            "model": self._model,
            "messages": api_messages,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": temperature if temperature is not None else self._config.temperature,
        }

        try:
            resp = await self._post_with_retry("/chat/completions", body)
            data = resp.json()
            choice = data["choices"][0]
        except httpx.HTTPError as e:
            raise ProviderError(f"{self._config.provider} request failed: {e}") from e
        except (ValueError, KeyError, IndexError) as e:
            raise ProviderError(f"malformed completion response: {e}") from e

        usage = data.get("usage", {})
        return LLMResponse(
            content=choice["message"].get("content", "") or "",
            stop_reason=choice.get("finish_reason"),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )

    def count_tokens(self, text: str) -> int:
        return len(self._tokenizer.encode(text))

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_with_retry(
        self, path: str, body: dict[str, Any], max_retries: int = 2
    ) -> httpx.Response:
        for attempt in range(max_retries + 1):
            try:
                resp = await self._client.post(path, json=body)
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as e:
                if attempt == max_retries or e.response.status_code < 500:
                    raise
                wait = (2 ** attempt) + random.uniform(0, 1)
                log.warning("llm_retry", status=e.response.status_code, attempt=attempt)
                await asyncio.sleep(wait)
            except httpx.ConnectError:
                if attempt == max_retries:
                    raise
                wait = (2 ** attempt) + random.uniform(0, 1)
                log.warning("llm_connect_retry", attempt=attempt)
                await asyncio.sleep(wait)
        raise RuntimeError("Unreachable")
