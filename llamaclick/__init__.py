"""LlamaClick - LLM-driven web automation agent."""

__version__ = "0.1.0"
