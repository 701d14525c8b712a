"""Session state machine: drives a plan step by step to one terminal outcome."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, TypeVar
from uuid import uuid4

from llamaclick.browser.base import BrowserBackend
from llamaclick.browser.types import PageState
from llamaclick.config import AgentConfig
from llamaclick.core.deadline import CancelToken, Clock, Deadline
from llamaclick.core.executor import execute
from llamaclick.core.llm.base import LLMProvider
from llamaclick.core.locator import ResolvedTarget, locate
from llamaclick.core.recovery import RecoveryBudget, recover
from llamaclick.core.verifier import verify
from llamaclick.errors import (
    ExecutionError,
    ExecutionTargetStale,
    ExecutionTimeout,
    InvalidTransition,
    LlamaClickError,
    LocatorAmbiguous,
    LocatorNotFound,
    PlanningError,
    ProviderError,
    RecoveryExhausted,
    SessionAborted,
)
from llamaclick.models import (
    ActionKind,
    AttemptHistory,
    ExecutionOutcome,
    FailureKind,
    LocatorOutcome,
    Objective,
    Outcome,
    RecoveryRecord,
    Replan,
    Retry,
    SessionState,
    SessionSummary,
    Skip,
    StepAttempt,
    StepStatus,
    VerificationResult,
)
from llamaclick.planner.engine import ObjectivePlanner
from llamaclick.planner.models import Plan, Step
from llamaclick.utils.logging import bind_session, get_logger, unbind_session

log = get_logger(__name__)

T = TypeVar("T")


class SessionResources:
    """The browser and LLM a session owns. Released exactly once."""

    def __init__(self, browser: BrowserBackend, llm: LLMProvider | None = None) -> None:
        self.browser = browser
        self.llm = llm
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self.browser.close()
        except Exception:
            log.exception("browser_cleanup_error")
        if self.llm is not None:
            try:
                await self.llm.close()
            except Exception:
                log.exception("llm_cleanup_error")


@dataclass
class SessionResult:
    session_id: str
    outcome: Outcome
    plan: Plan | None
    history: AttemptHistory
    extracted: dict[int, dict[str, Any]] = field(default_factory=dict)
    error: BaseException | None = None
    cursor: int = 0
    started_at: datetime | None = None
    objective: Objective | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


_FAILURE_OF_LOCATOR = {
    LocatorNotFound: FailureKind.LOCATOR_NOT_FOUND,
    LocatorAmbiguous: FailureKind.LOCATOR_AMBIGUOUS,
}


def _ceiling(what: str) -> ExecutionTimeout:
    return ExecutionTimeout(f"{what}: session time limit reached", session_ceiling=True)


def _is_ceiling(error: BaseException | None) -> bool:
    return isinstance(error, ExecutionTimeout) and error.session_ceiling


class Session:
    """One run of an objective (or a ready-made plan) against one browser.

    ``run()`` never raises for step-local failures: they go through the
    recovery strategist, and only an abort, a failed replan, cancellation or
    the session time limit end the run early.
    """

    def __init__(
        self,
        resources: SessionResources,
        config: AgentConfig,
        *,
        objective: Objective | None = None,
        planner: ObjectivePlanner | None = None,
        plan: Plan | None = None,
        session_id: str | None = None,
        cancel: CancelToken | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if plan is None and (objective is None or planner is None):
            raise ValueError("a session needs either a plan or an objective and a planner")
        self.id = session_id or uuid4().hex[:12]
        self.objective: Objective = objective or plan.objective  # type: ignore[union-attr]
        self.plan = plan
        self.cursor = 0
        self.history = AttemptHistory()
        self.extracted: dict[int, dict[str, Any]] = {}
        self.state = SessionState.CREATED
        self.outcome: Outcome | None = None
        self.error: BaseException | None = None
        self.started_at: datetime | None = None
        self.cancel_token = cancel or CancelToken()
        self.resources = resources

        self._config = config
        self._planner = planner
        self._clock = clock
        self._deadline = Deadline(self._timeout(), clock=clock)
        self._replans_used = 0

    @property
    def browser(self) -> BrowserBackend:
        return self.resources.browser

    @property
    def replans_used(self) -> int:
        return self._replans_used

    def cancel(self, reason: str = "cancelled") -> None:
        self.cancel_token.cancel(reason)

    def _timeout(self) -> float:
        return self.objective.timeout_seconds or self._config.session_timeout

    async def run(self) -> SessionResult:
        if self.state is not SessionState.CREATED:
            raise InvalidTransition(f"session {self.id} already {self.state.value}")
        self.state = SessionState.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self._deadline = Deadline(self._timeout(), clock=self._clock)
        bind_session(self.id, self.objective.text)
        log.info("session_started", timeout=self._deadline.seconds, start_url=self.objective.start_url)

        try:
            outcome = await self._drive()
            error: BaseException | None = None
        except SessionAborted as e:
            outcome, error = Outcome.ABORTED, e
        except ExecutionTimeout as e:
            outcome = Outcome.TIMED_OUT if e.session_ceiling else Outcome.FAILED
            error = e
        except (PlanningError, RecoveryExhausted) as e:
            outcome, error = Outcome.FAILED, e
        except asyncio.CancelledError as e:
            await self._finish(Outcome.ABORTED, e)
            raise
        except Exception as e:
            log.exception("session_crashed")
            outcome, error = Outcome.FAILED, e

        await self._finish(outcome, error)
        return self.result()

    def result(self) -> SessionResult:
        if self.outcome is None:
            raise InvalidTransition(f"session {self.id} has not finished")
        return SessionResult(
            session_id=self.id,
            outcome=self.outcome,
            plan=self.plan,
            history=self.history,
            extracted=dict(self.extracted),
            error=self.error,
            cursor=self.cursor,
            started_at=self.started_at,
            objective=self.objective,
        )

    async def _finish(self, outcome: Outcome, error: BaseException | None) -> None:
        if self.outcome is not None:
            raise InvalidTransition(f"session {self.id} already ended {self.outcome.value}")
        self.outcome = outcome
        self.state = SessionState(outcome.value)
        self.error = error

        await self.resources.release()

        counts = self.plan.counts() if self.plan else {}
        self.history.append(SessionSummary(
            outcome=outcome,
            step_counts=counts,
            elapsed_seconds=round(self._deadline.elapsed(), 3),
            replans_used=self._replans_used,
            reason=str(error) if error else "",
        ))
        log.info(
            "session_finished",
            outcome=outcome.value,
            cursor=self.cursor,
            steps=counts,
            error=str(error) if error else None,
        )
        unbind_session()

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _drive(self) -> Outcome:
        if self.plan is None:
            assert self._planner is not None
            self.plan = await self._bounded("plan", self._planner.plan(self.objective))

        max_steps = self.objective.max_steps or self._config.max_steps
        if len(self.plan.steps) > max_steps:
            log.warning("plan_truncated", steps=len(self.plan.steps), max_steps=max_steps)
            del self.plan.steps[max_steps:]

        while self.cursor < len(self.plan.steps):
            self.cancel_token.raise_if_cancelled()
            if self._deadline.expired:
                raise _ceiling(f"before step {self.plan.steps[self.cursor].id}")

            await self._run_step(self.plan.steps[self.cursor])
            self.cursor += 1

            if self.cursor < len(self.plan.steps):
                await self._pause(self._config.time_between_actions)

        return Outcome.COMPLETED

    async def _run_step(self, step: Step) -> None:
        target = step.target
        step.transition(StepStatus.RUNNING)
        log.info("step_started", step=step.id, action=step.action.value, description=step.description)

        while True:
            try:
                attempt, error = await self._attempt(step, target)
                if not attempt.succeeded and self._config.capture_failures and not _is_ceiling(error):
                    attempt = await self._capture(attempt)
            except (SessionAborted, asyncio.CancelledError):
                step.transition(StepStatus.FAILED)
                raise
            self.history.append(attempt)

            if attempt.succeeded:
                step.transition(StepStatus.SUCCEEDED)
                if step.action is ActionKind.EXTRACT and attempt.execution is not None:
                    self.extracted[step.id] = dict(attempt.execution.data)
                log.info("step_succeeded", step=step.id, attempt=attempt.attempt)
                return

            step.transition(StepStatus.FAILED)
            assert attempt.failure is not None
            log.info(
                "step_failed",
                step=step.id,
                attempt=attempt.attempt,
                failure=attempt.failure.value,
                error=str(error) if error else None,
            )
            if isinstance(error, ExecutionTimeout) and error.session_ceiling:
                raise error

            budget = RecoveryBudget.from_config(self._config, self._replans_used)
            if self._planner is None:
                budget = replace(budget, replans_remaining=0)
            decision = recover(step, self.history, budget, attempt.failure)
            self.history.append(RecoveryRecord(
                step_id=step.id,
                attempt=attempt.attempt,
                decision=decision.kind,
                rationale=decision.rationale,
                delay=decision.delay if isinstance(decision, Retry) else 0.0,
                target=decision.target if isinstance(decision, Retry) else None,
            ))
            log.info("recovery_decision", step=step.id, decision=decision.kind, rationale=decision.rationale)

            if isinstance(decision, Retry):
                await self._pause(decision.delay)
                target = decision.target
                step.transition(StepStatus.RUNNING)
                continue
            if isinstance(decision, Skip):
                step.transition(StepStatus.SKIPPED)
                return
            if isinstance(decision, Replan):
                await self._replan(step, decision)
                return
            raise RecoveryExhausted(decision.rationale, step_id=step.id)

    async def _replan(self, step: Step, decision: Replan) -> None:
        assert self._planner is not None and self.plan is not None
        self._replans_used += 1
        snapshot = await self._snapshot_or_none()
        new_steps = await self._bounded(
            "replan",
            self._planner.replan(self.objective, self.plan, self.cursor, decision.reason, snapshot),
        )
        # The failed step is superseded by the new suffix
        step.transition(StepStatus.SKIPPED)
        self.plan.replace_suffix(self.cursor + 1, new_steps)
        log.info("plan_replaced", plan_id=self.plan.id, from_step=step.id, new_steps=len(new_steps))

    async def _attempt(
        self, step: Step, target: str | None
    ) -> tuple[StepAttempt, LlamaClickError | None]:
        number = self.history.next_attempt_number(step.id)

        def record(failure: FailureKind | None = None, **kwargs: Any) -> StepAttempt:
            return StepAttempt(step_id=step.id, attempt=number, target=target, failure=failure, **kwargs)

        resolved: ResolvedTarget | None = None
        located: LocatorOutcome | None = None
        if step.action.needs_target or (step.action is ActionKind.EXTRACT and target):
            try:
                if not target:
                    raise LocatorNotFound(f"{step.action.value} step has no target")
                resolved = await self._bounded(
                    "locate",
                    locate(
                        self.browser,
                        target,
                        action=step.action,
                        threshold=self._config.relevance_threshold,
                        margin=self._config.ambiguity_margin,
                        require_unique=step.unique,
                    ),
                    timeout=self._config.action_timeout,
                )
            except (LocatorNotFound, LocatorAmbiguous) as e:
                outcome = LocatorOutcome(resolved=False, detail=str(e))
                return record(_FAILURE_OF_LOCATOR[type(e)], locator=outcome), e
            except ExecutionTimeout as e:
                outcome = LocatorOutcome(resolved=False, detail=str(e))
                return record(FailureKind.EXECUTION_TIMEOUT, locator=outcome), e
            located = LocatorOutcome(
                resolved=True, element=resolved.info.to_dict(), score=resolved.score
            )

        parameters = dict(step.parameters)
        if step.action is ActionKind.NAVIGATE and not parameters.get("url") and target:
            parameters["url"] = target

        try:
            result = await execute(
                self.browser,
                step.action,
                resolved,
                parameters,
                target=target if step.action is ActionKind.WAIT else None,
                timeout=self._config.action_timeout,
                deadline=self._deadline,
                cancel=self.cancel_token,
                poll_interval=self._config.poll_interval,
                threshold=self._config.relevance_threshold,
            )
        except ExecutionTimeout as e:
            failed = ExecutionOutcome(ok=False, error=str(e))
            return record(FailureKind.EXECUTION_TIMEOUT, locator=located, execution=failed), e
        except ExecutionTargetStale as e:
            failed = ExecutionOutcome(ok=False, error=str(e))
            return record(FailureKind.TARGET_STALE, locator=located, execution=failed), e
        except ExecutionError as e:
            kind = FailureKind.EXECUTION_ERROR if e.recoverable else FailureKind.EXECUTION_FATAL
            failed = ExecutionOutcome(ok=False, error=str(e))
            return record(kind, locator=located, execution=failed), e
        executed = ExecutionOutcome(ok=True, data=result.data)

        if not step.expect:
            return record(locator=located, execution=executed, verification=VerificationResult.PASS), None

        try:
            page = await self._bounded("verify", self.browser.snapshot(), timeout=self._config.action_timeout)
        except ExecutionTimeout as e:
            if e.session_ceiling:
                return record(
                    FailureKind.EXECUTION_TIMEOUT, locator=located, execution=executed
                ), e
            verdict = VerificationResult.INDETERMINATE
        except ProviderError as e:
            log.warning("snapshot_failed", step=step.id, error=str(e))
            verdict = VerificationResult.INDETERMINATE
        else:
            verdict = verify(step, page)

        failure = None
        if verdict is VerificationResult.FAIL:
            failure = FailureKind.VERIFICATION_FAILED
        elif verdict is VerificationResult.INDETERMINATE:
            failure = FailureKind.VERIFICATION_INDETERMINATE
        return record(failure, locator=located, execution=executed, verification=verdict), None

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    async def _bounded(self, what: str, call: Awaitable[T], timeout: float = math.inf) -> T:
        """Await ``call`` within ``timeout`` and the session deadline."""
        limit, ceiling = self._deadline.bound(timeout)
        if limit <= 0:
            if asyncio.iscoroutine(call):
                call.close()
            raise _ceiling(what)
        try:
            return await asyncio.wait_for(call, timeout=limit)
        except asyncio.TimeoutError as e:
            if ceiling or self._deadline.expired:
                raise _ceiling(what) from e
            raise ExecutionTimeout(f"{what}: timed out after {timeout}s") from e

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            self.cancel_token.raise_if_cancelled()
            return
        remaining = self._deadline.remaining()
        if seconds >= remaining:
            await self.cancel_token.sleep(remaining)
            raise _ceiling("pause")
        await self.cancel_token.sleep(seconds)

    async def _capture(self, attempt: StepAttempt) -> StepAttempt:
        """Save a screenshot and the page HTML next to a failed attempt."""
        directory = Path(self._config.artifacts_dir or "artifacts")
        stem = directory / f"{self.id}-step{attempt.step_id}-attempt{attempt.attempt}"
        saved: list[str] = []
        try:
            directory.mkdir(parents=True, exist_ok=True)
            await self._bounded(
                "screenshot", self.browser.screenshot(f"{stem}.png"), timeout=self._config.action_timeout
            )
            saved.append(f"{stem}.png")
            html = await self._bounded("html", self.browser.html(), timeout=self._config.action_timeout)
            Path(f"{stem}.html").write_text(html, encoding="utf-8")
            saved.append(f"{stem}.html")
        except (ExecutionTimeout, ProviderError, OSError) as e:
            log.warning("failure_capture_failed", step=attempt.step_id, attempt=attempt.attempt, error=str(e))
        return replace(attempt, artifacts=tuple(saved))

    async def _snapshot_or_none(self) -> PageState | None:
        try:
            return await self._bounded("snapshot", self.browser.snapshot(), timeout=self._config.action_timeout)
        except ExecutionTimeout as e:
            if e.session_ceiling:
                raise
            log.warning("snapshot_failed", error=str(e))
        except ProviderError as e:
            log.warning("snapshot_failed", error=str(e))
        return None
