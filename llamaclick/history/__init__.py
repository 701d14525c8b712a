"""Persisted session history."""

from llamaclick.history.store import HistoryStore

__all__ = ["HistoryStore"]
