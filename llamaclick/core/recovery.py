"""Decide what to do after a failed step attempt."""

from __future__ import annotations

import re
from dataclasses import dataclass

from llamaclick.browser.selectors import TargetKind, parse_target
from llamaclick.config import AgentConfig
from llamaclick.core.locator import FILLER_WORDS, ROLE_WORDS
from llamaclick.models import (
    Abort,
    AttemptHistory,
    FailureKind,
    RecoveryDecision,
    Replan,
    Retry,
    Skip,
)
from llamaclick.planner.models import Step

# Failures where a broader target description may find the element
RELAX_ON = frozenset({FailureKind.LOCATOR_NOT_FOUND, FailureKind.TARGET_STALE})

# Failures worth retrying unchanged after letting the page settle
BACKOFF_ON = frozenset({
    FailureKind.VERIFICATION_FAILED,
    FailureKind.VERIFICATION_INDETERMINATE,
    FailureKind.EXECUTION_TIMEOUT,
    FailureKind.EXECUTION_ERROR,
    FailureKind.LOCATOR_AMBIGUOUS,
})

UNRECOVERABLE = frozenset({FailureKind.EXECUTION_FATAL})

_CSS_TAIL_RE = re.compile(r"(\.[\w-]+|\[[^\]]*\]|#[\w-]+)$")


@dataclass(frozen=True)
class RecoveryBudget:
    retry_limit: int
    replans_remaining: int
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_cap: float = 8.0

    @classmethod
    def from_config(cls, config: AgentConfig, replans_used: int = 0) -> RecoveryBudget:
        return cls(
            retry_limit=config.retry_limit,
            replans_remaining=max(0, config.replan_budget - replans_used),
            backoff_base=config.backoff_base,
            backoff_factor=config.backoff_factor,
            backoff_cap=config.backoff_cap,
        )


def backoff_delay(attempts: int, budget: RecoveryBudget) -> float:
    """Delay before the next attempt, growing per attempt up to the cap."""
    exponent = max(0, attempts - 1)
    return min(budget.backoff_base * budget.backoff_factor ** exponent, budget.backoff_cap)


def _relax_phrase(phrase: str) -> str | None:
    words = phrase.split()
    key = [re.sub(r"\W", "", w).lower() for w in words]
    kept = [w for w, k in zip(words, key) if k not in ROLE_WORDS and k not in FILLER_WORDS]
    if kept and len(kept) < len(words):
        return " ".join(kept)
    if len(words) > 1:
        return " ".join(words[1:])
    return None


def relax_target(target: str | None) -> str | None:
    """A broader description of ``target``, or None when it cannot be widened."""
    if not target:
        return None
    desc = parse_target(target)
    if desc.kind is TargetKind.SEMANTIC:
        return _relax_phrase(desc.value)
    if desc.kind is TargetKind.CSS:
        tail = _CSS_TAIL_RE.search(desc.value)
        if tail and tail.start() > 0:
            return f"css={desc.value[: tail.start()]}"
        return None
    if desc.kind is TargetKind.TEXT:
        relaxed = _relax_phrase(desc.value)
        return f"text={relaxed}" if relaxed else None
    return None


def recover(
    step: Step,
    history: AttemptHistory,
    budget: RecoveryBudget,
    failure: FailureKind,
) -> RecoveryDecision:
    attempts = history.attempt_count(step.id)
    previous = history.attempts_for(step.id)
    current_target = previous[-1].target if previous else step.target

    if failure not in UNRECOVERABLE and attempts < budget.retry_limit:
        if failure in RELAX_ON:
            relaxed = relax_target(current_target)
            if relaxed:
                return Retry(
                    target=relaxed,
                    rationale=f"{failure.value} on attempt {attempts}; widening target to {relaxed!r}",
                )
            return Retry(
                target=current_target,
                rationale=f"{failure.value} on attempt {attempts}; target cannot be widened",
            )
        delay = backoff_delay(attempts, budget)
        return Retry(
            target=current_target,
            delay=delay,
            rationale=f"{failure.value} on attempt {attempts}; retrying after {delay:.2f}s",
        )

    if failure in UNRECOVERABLE:
        why = f"unrecoverable {failure.value}"
    else:
        why = f"retry limit {budget.retry_limit} exhausted ({failure.value})"

    if not step.critical:
        return Skip(rationale=f"{why}; step {step.id} is not critical")
    if budget.replans_remaining > 0:
        return Replan(
            reason=f"step {step.id} ({step.description}) failed: {why}",
            rationale=f"{why}; step {step.id} is critical, trying an alternative plan",
        )
    return Abort(rationale=f"{why}; no replans left")
