"""Planner data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from llamaclick.errors import InvalidTransition
from llamaclick.models import ActionKind, Objective, StepStatus

_ALLOWED = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {StepStatus.SUCCEEDED, StepStatus.FAILED},
    # Failed -> Running is a retry; Failed -> Skipped is recovery giving up on the step
    StepStatus.FAILED: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.SUCCEEDED: set(),
    StepStatus.SKIPPED: set(),
}


@dataclass
class Step:
    id: int
    description: str
    action: ActionKind
    target: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    expect: str | None = None
    critical: bool = True
    unique: bool = False
    status: StepStatus = StepStatus.PENDING

    def transition(self, new: StepStatus) -> None:
        if new not in _ALLOWED[self.status]:
            raise InvalidTransition(
                f"step {self.id}: {self.status.value} -> {new.value} is not allowed"
            )
        self.status = new

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "action": self.action.value,
            "target": self.target,
            "parameters": dict(self.parameters),
            "expect": self.expect,
            "critical": self.critical,
            "unique": self.unique,
            "status": self.status.value,
        }


@dataclass
class Plan:
    objective: Objective
    steps: list[Step]
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    replans: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def next_step_id(self) -> int:
        return max((s.id for s in self.steps), default=0) + 1

    @property
    def running(self) -> list[Step]:
        return [s for s in self.steps if s.status is StepStatus.RUNNING]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts

    def replace_suffix(self, start: int, new_steps: list[Step]) -> None:
        """Replace every step at index >= ``start`` with ``new_steps``.

        Only untouched (pending) steps may be replaced, and the new steps are
        renumbered to follow the highest id ever issued in this plan.
        """
        if start < 0 or start > len(self.steps):
            raise IndexError(f"suffix start {start} outside plan of {len(self.steps)} steps")
        for step in self.steps[start:]:
            if step.status is not StepStatus.PENDING:
                raise InvalidTransition(
                    f"step {step.id} has already been attempted and cannot be replaced"
                )
        next_id = self.next_step_id
        for offset, step in enumerate(new_steps):
            step.id = next_id + offset
            step.status = StepStatus.PENDING
        self.steps[start:] = new_steps
        self.replans += 1
        self.updated_at = datetime.now(timezone.utc)
