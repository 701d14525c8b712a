"""Perform one browser action against a resolved target."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar

from llamaclick.browser.base import BrowserBackend
from llamaclick.browser.selectors import parse_target
from llamaclick.core.conditions import ConditionError, evaluate, parse_condition
from llamaclick.core.deadline import CancelToken, Deadline
from llamaclick.core.locator import ResolvedTarget, locate
from llamaclick.errors import (
    ExecutionError,
    ExecutionTargetStale,
    ExecutionTimeout,
    LocatorNotFound,
    ProviderError,
    StaleElementError,
)
from llamaclick.models import ActionKind, VerificationResult
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class ExecutionResult:
    action: ActionKind
    data: dict[str, Any] = field(default_factory=dict)


class _Budget:
    """Time allowed for one action: its own timeout clamped by the session deadline."""

    def __init__(self, timeout: float, session: Deadline) -> None:
        self.action = Deadline(timeout)
        self.session = session

    def remaining(self) -> tuple[float, bool]:
        return self.session.bound(self.action.remaining())

    def timeout_error(self, what: str) -> ExecutionTimeout:
        _, ceiling = self.remaining()
        if ceiling or self.session.expired:
            return ExecutionTimeout(f"{what}: session time limit reached", session_ceiling=True)
        return ExecutionTimeout(f"{what}: timed out after {self.action.seconds}s")


async def _bounded(budget: _Budget, what: str, call: Awaitable[T]) -> T:
    timeout, _ = budget.remaining()
    if timeout <= 0:
        if asyncio.iscoroutine(call):
            call.close()
        raise budget.timeout_error(what)
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise budget.timeout_error(what) from e
    except StaleElementError as e:
        raise ExecutionTargetStale(f"{what}: target is no longer attached ({e})") from e
    except ProviderError as e:
        raise ExecutionError(f"{what}: {e}", recoverable=True) from e


def _require(parameters: dict[str, Any], name: str, action: ActionKind) -> str:
    value = parameters.get(name)
    if value is None or value == "":
        raise ExecutionError(f"{action.value} requires parameter {name!r}")
    return str(value)


async def execute(
    browser: BrowserBackend,
    action: ActionKind,
    resolved: ResolvedTarget | None,
    parameters: dict[str, Any],
    *,
    target: str | None = None,
    timeout: float,
    deadline: Deadline,
    cancel: CancelToken | None = None,
    poll_interval: float = 0.25,
    threshold: float = 0.35,
) -> ExecutionResult:
    """Run ``action`` once. Never retries; that is the recovery strategist's call.

    ``target`` is only read by ``wait``, which waits for it to appear.
    ``timeout`` is the action's own deadline in seconds; ``deadline`` is the
    session ceiling. Whichever is tighter bounds every browser call.
    """
    cancel = cancel or CancelToken()
    budget = _Budget(float(parameters.get("timeout") or timeout), deadline)

    if action is ActionKind.NAVIGATE:
        url = _require(parameters, "url", action)
        wait, _ = budget.remaining()
        await _bounded(budget, "navigate", browser.navigate(url, wait))
        return ExecutionResult(action, {"url": url})

    if action in (ActionKind.CLICK, ActionKind.FILL, ActionKind.SELECT):
        if resolved is None:
            raise ExecutionError(f"{action.value} needs a resolved target")
        value = None
        if action is not ActionKind.CLICK:
            value = _require(parameters, "value", action)
        wait, _ = budget.remaining()
        await _bounded(
            budget, action.value, browser.act(resolved.handle, action.value, value, wait)
        )
        data: dict[str, Any] = {"element": resolved.info.to_dict()}
        if value is not None:
            data["value"] = value
        return ExecutionResult(action, data)

    if action is ActionKind.WAIT:
        return await _wait(browser, target, parameters, budget, cancel, poll_interval)

    if action is ActionKind.EXTRACT:
        return await _extract(browser, resolved, parameters, budget, threshold)

    if action is ActionKind.VERIFY:
        return ExecutionResult(action)

    raise ExecutionError(f"Unknown action: {action}")


async def _wait(
    browser: BrowserBackend,
    target: str | None,
    parameters: dict[str, Any],
    budget: _Budget,
    cancel: CancelToken,
    poll_interval: float,
) -> ExecutionResult:
    until = parameters.get("until")
    selector = None
    if target:
        desc = parse_target(target)
        selector = f"text={desc.value}" if desc.is_semantic else desc.to_query()

    if not until and not selector:
        # Fixed pause; a pause longer than the time left is a timeout
        seconds = float(parameters.get("seconds") or 0)
        remaining, _ = budget.remaining()
        if seconds > remaining:
            await cancel.sleep(remaining)
            raise budget.timeout_error("wait")
        await cancel.sleep(seconds)
        return ExecutionResult(ActionKind.WAIT, {"waited": seconds})

    clauses = None
    if until:
        try:
            clauses = parse_condition(str(until))
        except ConditionError as e:
            raise ExecutionError(f"wait condition is invalid: {e}") from e

    polls = 0
    while True:
        cancel.raise_if_cancelled()
        polls += 1
        if clauses is not None:
            page = await _bounded(budget, "wait", browser.snapshot())
            if evaluate(clauses, page) is VerificationResult.PASS:
                return ExecutionResult(ActionKind.WAIT, {"polls": polls})
        else:
            assert selector is not None
            slice_, _ = budget.remaining()
            try:
                await _bounded(budget, "wait", browser.wait_for(selector, min(poll_interval, slice_)))
                return ExecutionResult(ActionKind.WAIT, {"polls": polls})
            except ExecutionTimeout:
                # One poll slice elapsed; only the overall budget ends the wait
                pass
        remaining, _ = budget.remaining()
        if remaining <= 0:
            log.debug("wait_gave_up", polls=polls, until=until, selector=selector)
            raise budget.timeout_error("wait")
        await cancel.sleep(min(poll_interval, remaining))


async def _extract(
    browser: BrowserBackend,
    resolved: ResolvedTarget | None,
    parameters: dict[str, Any],
    budget: _Budget,
    threshold: float,
) -> ExecutionResult:
    fields = parameters.get("fields")
    if fields:
        if not isinstance(fields, dict):
            raise ExecutionError("extract 'fields' must map names to selectors")
        out: dict[str, Any] = {}
        for name, selector in fields.items():
            # Semantic descriptors are ranked like step targets; below threshold gives None
            try:
                found = await _bounded(
                    budget, "extract", locate(browser, str(selector), threshold=threshold)
                )
            except LocatorNotFound as e:
                log.debug("extract_field_missing", field=name, selector=selector, reason=str(e))
                out[name] = None
                continue
            info = found.info
            out[name] = info.value if info.value is not None and info.tag in ("input", "select", "textarea") else info.text
        return ExecutionResult(ActionKind.EXTRACT, {"fields": out})

    if resolved is not None:
        info = await _bounded(budget, "extract", browser.describe(resolved.handle))
        return ExecutionResult(
            ActionKind.EXTRACT,
            {"text": info.text, "value": info.value, "attributes": dict(info.attributes)},
        )

    page = await _bounded(budget, "extract", browser.snapshot())
    return ExecutionResult(
        ActionKind.EXTRACT, {"url": page.url, "title": page.title, "text": page.text}
    )
