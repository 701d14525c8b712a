"""Tests for the recovery strategist."""

import pytest

from llamaclick.config import AgentConfig
from llamaclick.core.recovery import RecoveryBudget, backoff_delay, recover, relax_target
from llamaclick.models import (
    Abort,
    ActionKind,
    AttemptHistory,
    FailureKind,
    Replan,
    Retry,
    Skip,
    StepAttempt,
)
from llamaclick.planner.models import Step


def _step(critical=True, target="Submit button"):
    return Step(id=4, description="Submit the form", action=ActionKind.CLICK, target=target, critical=critical)


def _fail(history, step, failure, target=None):
    history.append(StepAttempt(
        step_id=step.id,
        attempt=history.next_attempt_number(step.id),
        target=target or step.target,
        failure=failure,
    ))


def _budget(retry_limit=3, replans=1):
    return RecoveryBudget(retry_limit=retry_limit, replans_remaining=replans)


class TestRelaxTarget:
    def test_drops_role_words(self):
        assert relax_target("Submit button") == "Submit"

    def test_drops_leading_qualifier(self):
        assert relax_target("Big blue Submit") == "blue Submit"

    def test_single_word_cannot_widen(self):
        assert relax_target("Submit") is None

    def test_css_drops_last_part(self):
        assert relax_target("#email.wide") == "css=#email"
        assert relax_target("css=form.login button.primary") == "css=form.login button"

    def test_bare_css_id_cannot_widen(self):
        assert relax_target("#email") is None

    def test_text_selector(self):
        assert relax_target("text=the Submit button") == "text=Submit"

    def test_xpath_cannot_widen(self):
        assert relax_target("//form/button[2]") is None

    def test_empty(self):
        assert relax_target(None) is None


class TestBackoff:
    def test_grows_then_caps(self):
        budget = RecoveryBudget(retry_limit=10, replans_remaining=0, backoff_base=0.5, backoff_factor=2.0, backoff_cap=8.0)
        assert [backoff_delay(n, budget) for n in (1, 2, 3, 4, 5, 6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_budget_from_config(self):
        budget = RecoveryBudget.from_config(AgentConfig(retry_limit=5, replan_budget=1), replans_used=1)
        assert budget.retry_limit == 5
        assert budget.replans_remaining == 0


class TestRecover:
    def test_not_found_retries_with_relaxed_target(self):
        step, history = _step(), AttemptHistory()
        _fail(history, step, FailureKind.LOCATOR_NOT_FOUND)
        decision = recover(step, history, _budget(), FailureKind.LOCATOR_NOT_FOUND)
        assert isinstance(decision, Retry)
        assert decision.target == "Submit"
        assert decision.delay == 0.0

    def test_relaxation_builds_on_previous_attempt(self):
        step, history = _step(), AttemptHistory()
        _fail(history, step, FailureKind.LOCATOR_NOT_FOUND)
        _fail(history, step, FailureKind.LOCATOR_NOT_FOUND, target="Submit")
        decision = recover(step, history, _budget(), FailureKind.LOCATOR_NOT_FOUND)
        assert isinstance(decision, Retry)
        assert decision.target == "Submit"

    def test_verification_failure_backs_off_with_same_target(self):
        step, history = _step(), AttemptHistory()
        budget = RecoveryBudget(retry_limit=3, replans_remaining=1, backoff_base=0.5)
        _fail(history, step, FailureKind.VERIFICATION_FAILED)
        first = recover(step, history, budget, FailureKind.VERIFICATION_FAILED)
        _fail(history, step, FailureKind.VERIFICATION_FAILED)
        second = recover(step, history, budget, FailureKind.VERIFICATION_FAILED)
        assert first.target == second.target == "Submit button"
        assert (first.delay, second.delay) == (0.5, 1.0)

    def test_exhausted_non_critical_step_is_skipped(self):
        step, history = _step(critical=False), AttemptHistory()
        for _ in range(3):
            _fail(history, step, FailureKind.LOCATOR_NOT_FOUND)
        assert isinstance(recover(step, history, _budget(), FailureKind.LOCATOR_NOT_FOUND), Skip)

    def test_exhausted_critical_step_replans(self):
        step, history = _step(), AttemptHistory()
        for _ in range(3):
            _fail(history, step, FailureKind.EXECUTION_TIMEOUT)
        decision = recover(step, history, _budget(replans=1), FailureKind.EXECUTION_TIMEOUT)
        assert isinstance(decision, Replan)
        assert "step 4" in decision.reason
        assert "Submit the form" in decision.reason

    def test_exhausted_critical_step_without_replans_aborts(self):
        step, history = _step(), AttemptHistory()
        for _ in range(3):
            _fail(history, step, FailureKind.EXECUTION_TIMEOUT)
        assert isinstance(recover(step, history, _budget(replans=0), FailureKind.EXECUTION_TIMEOUT), Abort)

    def test_unrecoverable_error_skips_retries(self):
        step, history = _step(), AttemptHistory()
        _fail(history, step, FailureKind.EXECUTION_FATAL)
        assert isinstance(recover(step, history, _budget(replans=1), FailureKind.EXECUTION_FATAL), Replan)
        assert isinstance(recover(step, history, _budget(replans=0), FailureKind.EXECUTION_FATAL), Abort)

    def test_unrecoverable_error_on_optional_step_skips(self):
        step, history = _step(critical=False), AttemptHistory()
        _fail(history, step, FailureKind.EXECUTION_FATAL)
        assert isinstance(recover(step, history, _budget(), FailureKind.EXECUTION_FATAL), Skip)

    @pytest.mark.parametrize("limit", [1, 2, 3, 5])
    @pytest.mark.parametrize("failure", [
        FailureKind.LOCATOR_NOT_FOUND,
        FailureKind.LOCATOR_AMBIGUOUS,
        FailureKind.VERIFICATION_INDETERMINATE,
        FailureKind.EXECUTION_ERROR,
    ])
    def test_never_more_attempts_than_limit(self, limit, failure):
        step, history = _step(critical=False), AttemptHistory()
        while True:
            _fail(history, step, failure)
            decision = recover(step, history, _budget(retry_limit=limit), failure)
            if not isinstance(decision, Retry):
                break
        assert history.attempt_count(step.id) == limit
        assert isinstance(decision, Skip)

    def test_rationale_always_present(self):
        step, history = _step(), AttemptHistory()
        _fail(history, step, FailureKind.TARGET_STALE)
        assert recover(step, history, _budget(), FailureKind.TARGET_STALE).rationale
