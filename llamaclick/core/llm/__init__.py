"""LLM provider subpackage."""

from llamaclick.config import LLMConfig
from llamaclick.core.llm.anthropic import AnthropicProvider
from llamaclick.core.llm.base import LLMProvider
from llamaclick.core.llm.openai_compat import OpenAICompatibleProvider
from llamaclick.core.llm.types import LLMMessage, LLMResponse

__all__ = [
    "LLMMessage",
    "LLMResponse",
    "LLMProvider",
    "AnthropicProvider",
    "OpenAICompatibleProvider",
    "create_provider",
]


def create_provider(config: LLMConfig) -> LLMProvider:
    """Factory to create the appropriate LLM provider from config."""
    if config.provider == "anthropic":
        return AnthropicProvider(config)
    return OpenAICompatibleProvider(config)
