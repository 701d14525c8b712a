"""Tests for the append-only attempt history."""

import dataclasses

import pytest

from llamaclick.models import (
    AttemptHistory,
    FailureKind,
    Outcome,
    RecoveryRecord,
    SessionSummary,
    StepAttempt,
    VerificationResult,
)


def _attempt(step_id, attempt, failure=None):
    return StepAttempt(step_id=step_id, attempt=attempt, target="Search box", failure=failure)


class TestAttemptHistory:
    def test_attempts_numbered_from_one(self):
        history = AttemptHistory()
        with pytest.raises(ValueError):
            history.append(_attempt(1, 2))
        history.append(_attempt(1, 1))
        assert history.next_attempt_number(1) == 2

    def test_rejects_repeated_attempt_number(self):
        history = AttemptHistory()
        history.append(_attempt(1, 1, FailureKind.LOCATOR_NOT_FOUND))
        with pytest.raises(ValueError):
            history.append(_attempt(1, 1))

    def test_steps_number_independently(self):
        history = AttemptHistory()
        history.append(_attempt(1, 1))
        history.append(_attempt(2, 1, FailureKind.VERIFICATION_FAILED))
        history.append(_attempt(2, 2))
        assert [(a.step_id, a.attempt) for a in history.attempts] == [(1, 1), (2, 1), (2, 2)]
        assert history.attempt_count(2) == 2
        assert history.attempt_count(3) == 0

    def test_recovery_record_must_follow_its_attempt(self):
        history = AttemptHistory()
        with pytest.raises(ValueError):
            history.append(RecoveryRecord(step_id=1, attempt=1, decision="retry", rationale="x"))
        history.append(_attempt(1, 1, FailureKind.LOCATOR_NOT_FOUND))
        history.append(RecoveryRecord(step_id=1, attempt=1, decision="retry", rationale="x"))
        assert len(history) == 2

    def test_summary_closes_history(self):
        history = AttemptHistory()
        history.append(_attempt(1, 1))
        summary = SessionSummary(
            outcome=Outcome.COMPLETED, step_counts={"succeeded": 1}, elapsed_seconds=0.4, replans_used=0
        )
        history.append(summary)
        assert history.summary is summary
        with pytest.raises(ValueError):
            history.append(_attempt(2, 1))

    def test_prior_records_cannot_change(self):
        history = AttemptHistory()
        history.append(_attempt(1, 1, FailureKind.LOCATOR_NOT_FOUND))
        snapshot = history.records
        history.append(_attempt(1, 2))

        assert len(snapshot) == 1
        with pytest.raises(TypeError):
            history.records[0] = _attempt(1, 1)  # type: ignore[index]
        with pytest.raises(dataclasses.FrozenInstanceError):
            history.records[0].failure = None  # type: ignore[misc]
        assert history.records[0].failure is FailureKind.LOCATOR_NOT_FOUND

    def test_to_list_preserves_order_and_kinds(self):
        history = AttemptHistory()
        history.append(_attempt(1, 1, FailureKind.VERIFICATION_FAILED))
        history.append(RecoveryRecord(step_id=1, attempt=1, decision="retry", rationale="backoff", delay=0.5))
        history.append(StepAttempt(step_id=1, attempt=2, target="Search box", verification=VerificationResult.PASS))
        history.append(SessionSummary(Outcome.COMPLETED, {"succeeded": 1}, 1.2, 0))

        data = history.to_list()
        assert [d["record"] for d in data] == ["attempt", "recovery", "attempt", "summary"]
        assert data[1]["delay"] == 0.5
        assert data[2]["verification"] == "pass"
        assert isinstance(data[0]["timestamp"], str)
