"""Utility modules for LlamaClick."""

from llamaclick.utils.logging import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
