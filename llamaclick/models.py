"""Typed records shared by the planner, the step pipeline and the session."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class ActionKind(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    WAIT = "wait"
    EXTRACT = "extract"
    VERIFY = "verify"

    @property
    def needs_target(self) -> bool:
        return self in (ActionKind.CLICK, ActionKind.FILL, ActionKind.SELECT)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class Outcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    Outcome.COMPLETED: 0,
    Outcome.FAILED: 1,
    Outcome.ABORTED: 2,
    Outcome.TIMED_OUT: 3,
}


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self not in (SessionState.CREATED, SessionState.RUNNING)


class FailureKind(str, Enum):
    LOCATOR_NOT_FOUND = "locator_not_found"
    LOCATOR_AMBIGUOUS = "locator_ambiguous"
    TARGET_STALE = "target_stale"
    EXECUTION_TIMEOUT = "execution_timeout"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_FATAL = "execution_fatal"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_INDETERMINATE = "verification_indeterminate"


class VerificationResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class Objective:
    text: str
    start_url: str | None = None
    timeout_seconds: float | None = None
    max_steps: int | None = None


# ---------------------------------------------------------------------------
# Attempt records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocatorOutcome:
    resolved: bool
    element: dict[str, Any] | None = None
    score: float | None = None
    detail: str = ""


@dataclass(frozen=True)
class ExecutionOutcome:
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass(frozen=True)
class StepAttempt:
    step_id: int
    attempt: int
    target: str | None
    locator: LocatorOutcome | None = None
    execution: ExecutionOutcome | None = None
    verification: VerificationResult | None = None
    failure: FailureKind | None = None
    # Screenshot/HTML paths saved for a failed attempt
    artifacts: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["record"] = "attempt"
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class RecoveryRecord:
    step_id: int
    attempt: int
    decision: str
    rationale: str
    delay: float = 0.0
    target: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["record"] = "recovery"
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class SessionSummary:
    outcome: Outcome
    step_counts: dict[str, int]
    elapsed_seconds: float
    replans_used: int
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["record"] = "summary"
        data["timestamp"] = self.timestamp.isoformat()
        return data


HistoryRecord = Union[StepAttempt, RecoveryRecord, SessionSummary]


class AttemptHistory:
    """Append-only, ordered record of every attempt plus the final summary."""

    def __init__(self) -> None:
        self._records: list[HistoryRecord] = []
        self._last_attempt: dict[int, int] = {}
        self._closed = False

    @property
    def records(self) -> tuple[HistoryRecord, ...]:
        return tuple(self._records)

    @property
    def attempts(self) -> tuple[StepAttempt, ...]:
        return tuple(r for r in self._records if isinstance(r, StepAttempt))

    @property
    def summary(self) -> SessionSummary | None:
        if self._records and isinstance(self._records[-1], SessionSummary):
            return self._records[-1]
        return None

    def attempts_for(self, step_id: int) -> tuple[StepAttempt, ...]:
        return tuple(a for a in self.attempts if a.step_id == step_id)

    def attempt_count(self, step_id: int) -> int:
        return self._last_attempt.get(step_id, 0)

    def next_attempt_number(self, step_id: int) -> int:
        return self.attempt_count(step_id) + 1

    def append(self, record: HistoryRecord) -> None:
        if self._closed:
            raise ValueError("history is closed; the session already has a summary")
        if isinstance(record, StepAttempt):
            expected = self.next_attempt_number(record.step_id)
            if record.attempt != expected:
                raise ValueError(
                    f"attempt {record.attempt} for step {record.step_id} out of order "
                    f"(expected {expected})"
                )
            self._last_attempt[record.step_id] = record.attempt
        elif isinstance(record, RecoveryRecord):
            if self.attempt_count(record.step_id) != record.attempt:
                raise ValueError(
                    f"recovery record for step {record.step_id} attempt {record.attempt} "
                    "does not follow that attempt"
                )
        else:
            self._closed = True
        self._records.append(record)

    def to_list(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._records]

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Recovery decisions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Retry:
    target: str | None
    delay: float = 0.0
    rationale: str = ""
    kind: str = field(default="retry", init=False)


@dataclass(frozen=True)
class Replan:
    reason: str
    rationale: str = ""
    kind: str = field(default="replan", init=False)


@dataclass(frozen=True)
class Skip:
    rationale: str = ""
    kind: str = field(default="skip", init=False)


@dataclass(frozen=True)
class Abort:
    rationale: str = ""
    kind: str = field(default="abort", init=False)


RecoveryDecision = Union[Retry, Replan, Skip, Abort]
