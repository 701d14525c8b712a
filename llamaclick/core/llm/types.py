"""LLM data types."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LLMMessage:
    role: str  # "user", "assistant", "system"
    content: str


@dataclass
class LLMResponse:
    content: str = ""
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
