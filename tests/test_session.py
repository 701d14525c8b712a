"""Tests for the session state machine."""

import asyncio
import time

import pytest
from unittest.mock import AsyncMock, MagicMock

from fakes import FORM_URL, THANKS_URL, FakeBrowser, FakePage, Node, ScriptedLLM, form_site
from llamaclick.core.session import Session, SessionResources
from llamaclick.errors import (
    BrowserError,
    ExecutionTimeout,
    InvalidTransition,
    PlanningError,
    RecoveryExhausted,
    SessionAborted,
)
from llamaclick.models import (
    ActionKind,
    FailureKind,
    Objective,
    Outcome,
    RecoveryRecord,
    SessionState,
    SessionSummary,
    StepAttempt,
    StepStatus,
)
from llamaclick.planner.engine import ObjectivePlanner
from llamaclick.planner.models import Plan, Step


def _step(id, action, target=None, critical=True, expect=None, **parameters):
    return Step(
        id=id,
        description=f"{action.value} {target or ''}".strip(),
        action=action,
        target=target,
        parameters=parameters,
        expect=expect,
        critical=critical,
    )


def _session(browser, config, steps, objective=None, planner=None, llm=None):
    plan = Plan(objective=objective or Objective("test objective"), steps=steps)
    return Session(SessionResources(browser, llm), config, plan=plan, planner=planner)


def _kinds(history):
    out = []
    for record in history.records:
        if isinstance(record, StepAttempt):
            out.append(("attempt", record.step_id, record.attempt))
        elif isinstance(record, RecoveryRecord):
            out.append((record.decision, record.step_id, record.attempt))
        else:
            out.append(("summary",))
    return out


@pytest.fixture
def blank_browser():
    return FakeBrowser(*form_site())


class TestHappyPath:
    async def test_every_step_succeeds_first_time(self, blank_browser, agent_config):
        steps = [
            _step(1, ActionKind.NAVIGATE, url=FORM_URL),
            _step(2, ActionKind.FILL, "Email field", value="ada@example.com",
                  expect="value_equals:#email==ada@example.com"),
            _step(3, ActionKind.SELECT, "Topic", value="sales"),
            _step(4, ActionKind.CLICK, "Submit button", expect="url_contains:/thanks"),
            _step(5, ActionKind.EXTRACT),
        ]
        session = _session(blank_browser, agent_config, steps)
        result = await session.run()

        assert result.outcome is Outcome.COMPLETED
        assert result.exit_code == 0
        assert result.cursor == len(steps)
        assert all(s.status is StepStatus.SUCCEEDED for s in result.plan.steps)
        assert [a.attempt for a in result.history.attempts] == [1, 1, 1, 1, 1]
        assert result.extracted[5]["url"] == THANKS_URL
        assert isinstance(result.history.records[-1], SessionSummary)
        assert result.history.summary.step_counts["succeeded"] == 5
        assert session.state is SessionState.COMPLETED
        assert blank_browser.close_calls == 1

    async def test_click_button_labeled_submit(self, browser, agent_config):
        llm = ScriptedLLM(
            '{"steps": [{"description": "Click Submit", "action": "click", "target": "Submit button"}]}'
        )
        session = Session(
            SessionResources(browser, llm),
            agent_config,
            objective=Objective("click button labeled Submit"),
            planner=ObjectivePlanner(llm),
        )
        result = await session.run()

        assert result.outcome is Outcome.COMPLETED
        assert result.plan.counts()["succeeded"] == 1
        (attempt,) = result.history.attempts
        assert attempt.locator.resolved
        assert attempt.locator.element["text"] == "Submit"
        assert attempt.verification.value == "pass"
        llm.close.assert_awaited_once()

    async def test_navigate_url_taken_from_target(self, blank_browser, agent_config):
        steps = [_step(1, ActionKind.NAVIGATE, FORM_URL)]
        result = await _session(blank_browser, agent_config, steps).run()
        assert result.outcome is Outcome.COMPLETED
        assert blank_browser.navigations == [FORM_URL]

    async def test_only_one_step_running_at_a_time(self, browser, agent_config):
        observed = []
        session = _session(browser, agent_config, [
            _step(1, ActionKind.FILL, "#email", value="x@example.com"),
            _step(2, ActionKind.CLICK, "Submit button"),
        ])
        browser.on_act = lambda b, node, kind: observed.append([s.id for s in session.plan.running])
        await session.run()
        assert observed == [[1], [2]]


class TestRecovery:
    async def test_unresolvable_optional_step_is_skipped(self, browser, agent_config):
        steps = [_step(1, ActionKind.CLICK, "Shopping cart", critical=False)]
        result = await _session(browser, agent_config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        assert result.plan.steps[0].status is StepStatus.SKIPPED
        assert result.plan.counts()["skipped"] == 1
        assert _kinds(result.history) == [
            ("attempt", 1, 1), ("retry", 1, 1),
            ("attempt", 1, 2), ("retry", 1, 2),
            ("attempt", 1, 3), ("skip", 1, 3),
            ("summary",),
        ]
        assert all(a.failure is FailureKind.LOCATOR_NOT_FOUND for a in result.history.attempts)
        assert [a.target for a in result.history.attempts] == ["Shopping cart", "cart", "cart"]

    async def test_verification_failure_then_success(self, browser, agent_config):
        clicks = []

        def on_act(b, node, kind):
            clicks.append(kind)
            if len(clicks) == 2:
                b.current.text = "Saved"

        browser.current.nodes[3].href = None
        browser.on_act = on_act
        steps = [_step(1, ActionKind.CLICK, "Submit button", expect="text_present:Saved")]
        result = await _session(browser, agent_config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        first, second = result.history.attempts
        assert first.failure is FailureKind.VERIFICATION_FAILED
        assert second.succeeded

    async def test_stale_target_retried_with_wider_description(self, browser, agent_config):
        browser.stale_acts = 1
        steps = [_step(1, ActionKind.CLICK, "Submit button")]
        result = await _session(browser, agent_config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        first, second = result.history.attempts
        assert first.failure is FailureKind.TARGET_STALE
        assert second.target == "Submit"

    async def test_bad_parameters_skip_optional_step_without_retry(self, browser, agent_config):
        steps = [
            _step(1, ActionKind.FILL, "Email field", critical=False),
            _step(2, ActionKind.CLICK, "Submit button"),
        ]
        result = await _session(browser, agent_config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        assert len(result.history.attempts_for(1)) == 1
        assert result.history.attempts_for(1)[0].failure is FailureKind.EXECUTION_FATAL
        assert result.plan.steps[0].status is StepStatus.SKIPPED

    async def test_critical_failure_without_planner_fails_session(self, browser, agent_config):
        steps = [
            _step(1, ActionKind.CLICK, "Shopping cart"),
            _step(2, ActionKind.CLICK, "Submit button"),
        ]
        result = await _session(browser, agent_config, steps).run()

        assert result.outcome is Outcome.FAILED
        assert result.exit_code == 1
        assert isinstance(result.error, RecoveryExhausted)
        assert result.plan.steps[0].status is StepStatus.FAILED
        assert result.plan.steps[1].status is StepStatus.PENDING
        assert result.history.attempts_for(2) == ()


class TestReplan:
    async def test_replan_replaces_suffix(self, browser, agent_config):
        planner = MagicMock()
        planner.replan = AsyncMock(return_value=[_step(1, ActionKind.CLICK, "Submit button")])
        steps = [
            _step(1, ActionKind.CLICK, "Shopping cart"),
            _step(2, ActionKind.EXTRACT),
        ]
        result = await _session(browser, agent_config, steps, planner=planner).run()

        assert result.outcome is Outcome.COMPLETED
        assert [(s.id, s.status) for s in result.plan.steps] == [
            (1, StepStatus.SKIPPED),
            (3, StepStatus.SUCCEEDED),
        ]
        assert result.plan.replans == 1
        assert result.history.summary.replans_used == 1
        assert ("replan", 1, 3) in _kinds(result.history)
        planner.replan.assert_awaited_once()
        assert planner.replan.call_args.args[2] == 0

    async def test_second_critical_failure_aborts(self, browser, agent_config):
        planner = MagicMock()
        planner.replan = AsyncMock(return_value=[_step(1, ActionKind.CLICK, "Shopping cart")])
        steps = [_step(1, ActionKind.CLICK, "Shopping cart")]
        result = await _session(browser, agent_config, steps, planner=planner).run()

        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, RecoveryExhausted)
        assert planner.replan.await_count == 1
        assert _kinds(result.history)[-2] == ("abort", 2, 3)
        assert result.history.summary.replans_used == 1

    async def test_failed_replan_fails_session(self, browser, agent_config):
        planner = MagicMock()
        planner.replan = AsyncMock(side_effect=PlanningError("no alternative"))
        steps = [_step(1, ActionKind.CLICK, "Shopping cart")]
        result = await _session(browser, agent_config, steps, planner=planner).run()

        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, PlanningError)
        assert result.plan.steps[0].status is StepStatus.FAILED
        assert browser.close_calls == 1

    async def test_initial_planning_failure(self, browser, agent_config):
        llm = ScriptedLLM("I cannot help with that")
        session = Session(
            SessionResources(browser, llm),
            agent_config,
            objective=Objective("do something"),
            planner=ObjectivePlanner(llm),
        )
        result = await session.run()

        assert result.outcome is Outcome.FAILED
        assert result.plan is None
        assert isinstance(result.error, PlanningError)
        assert browser.close_calls == 1
        assert len(result.history) == 1


class TestCancellation:
    async def test_cancel_between_steps(self, browser, agent_config):
        steps = [
            _step(1, ActionKind.CLICK, "Submit button"),
            _step(2, ActionKind.EXTRACT),
        ]
        session = _session(browser, agent_config, steps)
        browser.on_act = lambda b, node, kind: session.cancel("user asked")
        result = await session.run()

        assert result.outcome is Outcome.ABORTED
        assert result.exit_code == 2
        assert isinstance(result.error, SessionAborted)
        assert result.plan.steps[0].status is StepStatus.SUCCEEDED
        assert result.plan.steps[1].status is StepStatus.PENDING
        assert result.history.attempts_for(2) == ()
        assert browser.close_calls == 1

    async def test_cancel_during_wait_leaves_step_failed(self, browser, agent_config):
        steps = [_step(1, ActionKind.WAIT, until="text_present:never")]
        session = _session(browser, agent_config, steps)
        asyncio.get_running_loop().call_later(0.05, session.cancel)
        result = await session.run()

        assert result.outcome is Outcome.ABORTED
        assert result.plan.steps[0].status is StepStatus.FAILED
        assert not result.plan.running

    async def test_task_cancel_during_step(self, browser, agent_config):
        steps = [_step(1, ActionKind.WAIT, until="text_present:never")]
        session = _session(browser, agent_config, steps)
        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.outcome is Outcome.ABORTED
        assert session.plan.steps[0].status is StepStatus.FAILED
        assert not session.plan.running
        assert session.history.attempts == ()
        assert browser.close_calls == 1


class TestFailureCapture:
    async def test_failed_attempts_keep_screenshot_and_html(self, browser, agent_config, tmp_path):
        config = agent_config.model_copy(update={
            "capture_failures": True, "artifacts_dir": str(tmp_path), "retry_limit": 2,
        })
        steps = [
            _step(1, ActionKind.CLICK, "Download invoice PDF", critical=False),
            _step(2, ActionKind.EXTRACT),
        ]
        session = _session(browser, config, steps)
        result = await session.run()

        assert result.outcome is Outcome.COMPLETED
        first, second, third = result.history.attempts
        assert len(first.artifacts) == 2
        png, html = first.artifacts
        assert png.endswith(f"{session.id}-step1-attempt1.png")
        assert (tmp_path / f"{session.id}-step1-attempt1.png").exists()
        assert "Contact us" in (tmp_path / f"{session.id}-step1-attempt1.html").read_text()
        assert len(second.artifacts) == 2
        assert third.step_id == 2 and third.artifacts == ()
        assert browser.screenshots == [png, second.artifacts[0]]

    async def test_capture_off_by_default(self, browser, agent_config):
        steps = [_step(1, ActionKind.CLICK, "Download invoice PDF", critical=False)]
        result = await _session(browser, agent_config, steps).run()
        assert all(a.artifacts == () for a in result.history.attempts)
        assert browser.screenshots == []

    async def test_capture_failure_keeps_attempt(self, browser, agent_config, tmp_path):
        config = agent_config.model_copy(update={
            "capture_failures": True, "artifacts_dir": str(tmp_path), "retry_limit": 1,
        })
        browser.screenshot_error = BrowserError("target closed")
        steps = [_step(1, ActionKind.CLICK, "Download invoice PDF", critical=False)]
        result = await _session(browser, config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        (attempt,) = result.history.attempts
        assert attempt.failure is FailureKind.LOCATOR_NOT_FOUND
        assert attempt.artifacts == ()


class TestDeadlines:
    async def test_session_ceiling_cuts_long_wait(self, browser, agent_config):
        steps = [_step(1, ActionKind.WAIT, seconds=0.5)]
        objective = Objective("wait too long", timeout_seconds=0.2)
        started = time.monotonic()
        result = await _session(browser, agent_config, steps, objective=objective).run()

        assert time.monotonic() - started < 0.45
        assert result.outcome is Outcome.TIMED_OUT
        assert result.exit_code == 3
        assert isinstance(result.error, ExecutionTimeout)
        assert result.error.session_ceiling
        assert result.history.attempts[0].failure is FailureKind.EXECUTION_TIMEOUT
        assert result.plan.steps[0].status is StepStatus.FAILED

    async def test_action_timeout_is_retried(self, browser, agent_config):
        config = agent_config.model_copy(update={"action_timeout": 0.05})
        browser.act_delay = 0.2
        steps = [_step(1, ActionKind.CLICK, "Submit button", critical=False)]
        result = await _session(browser, config, steps).run()

        assert result.outcome is Outcome.COMPLETED
        assert [a.failure for a in result.history.attempts] == [FailureKind.EXECUTION_TIMEOUT] * 3
        assert result.plan.steps[0].status is StepStatus.SKIPPED


class TestLifecycle:
    async def test_runs_once(self, browser, agent_config):
        session = _session(browser, agent_config, [_step(1, ActionKind.EXTRACT)])
        await session.run()
        with pytest.raises(InvalidTransition):
            await session.run()

    async def test_resources_released_once(self, browser, agent_config):
        llm = AsyncMock()
        session = _session(browser, agent_config, [_step(1, ActionKind.EXTRACT)], llm=llm)
        await session.run()
        await session.resources.release()
        assert browser.close_calls == 1
        llm.close.assert_awaited_once()

    async def test_cleanup_error_does_not_change_outcome(self, agent_config):
        browser = FakeBrowser(FakePage("https://example.com", nodes=[Node("p", "hi")]), start_url="https://example.com")
        browser.close = AsyncMock(side_effect=RuntimeError("browser already gone"))
        result = await _session(browser, agent_config, [_step(1, ActionKind.EXTRACT)]).run()
        assert result.outcome is Outcome.COMPLETED

    def test_needs_plan_or_planner(self, browser, agent_config):
        with pytest.raises(ValueError):
            Session(SessionResources(browser), agent_config, objective=Objective("x"))

    def test_exit_codes_are_distinct(self):
        codes = [o.exit_code for o in Outcome]
        assert Outcome.COMPLETED.exit_code == 0
        assert len(set(codes)) == len(codes)
        assert all(code != 0 for o, code in zip(Outcome, codes) if o is not Outcome.COMPLETED)
