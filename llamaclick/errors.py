"""Exception hierarchy for planning, targeting, execution and session control."""

from __future__ import annotations


class LlamaClickError(Exception):
    """Base class for every error raised by llamaclick."""


class ConfigError(LlamaClickError):
    """Configuration could not be loaded or failed validation. Never retried."""


class ProviderError(LlamaClickError):
    """LLM or browser transport failure."""


class BrowserError(ProviderError):
    pass


class StaleElementError(BrowserError):
    """The element handle no longer refers to a node attached to the page."""


class PlanningError(LlamaClickError):
    """The objective could not be decomposed into actionable steps."""


class LocatorError(LlamaClickError):
    def __init__(self, message: str, target: str = "") -> None:
        super().__init__(message)
        self.target = target


class LocatorNotFound(LocatorError):
    pass


class LocatorAmbiguous(LocatorError):
    def __init__(self, message: str, target: str = "", scores: tuple[float, ...] = ()) -> None:
        super().__init__(message, target)
        self.scores = scores


class ExecutionError(LlamaClickError):
    def __init__(self, message: str, recoverable: bool = False) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class ExecutionTimeout(ExecutionError):
    def __init__(self, message: str, session_ceiling: bool = False) -> None:
        super().__init__(message, recoverable=not session_ceiling)
        self.session_ceiling = session_ceiling


class ExecutionTargetStale(ExecutionError):
    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=True)


class VerificationFailed(LlamaClickError):
    pass


class RecoveryExhausted(LlamaClickError):
    def __init__(self, message: str, step_id: int | None = None) -> None:
        super().__init__(message)
        self.step_id = step_id


class SessionAborted(LlamaClickError):
    """The session was cancelled from outside."""


class InvalidTransition(LlamaClickError):
    """A step or session status change that the state machine forbids."""
