"""Objective decomposition and suffix replanning."""

from __future__ import annotations

import json
from typing import Any

from llamaclick.browser.types import PageState
from llamaclick.core.conditions import PREDICATES, is_valid
from llamaclick.core.llm import LLMProvider
from llamaclick.errors import PlanningError, ProviderError
from llamaclick.models import ActionKind, Objective, StepStatus
from llamaclick.planner.models import Plan, Step
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

_SYSTEM = (
    "You are a planning agent that breaks web automation objectives into "
    "small, verifiable browser steps. You answer with JSON only."
)

_STEP_FORMAT = """\
Each step is one browser action:
  navigate  - parameters.url
  click     - target
  fill      - target, parameters.value
  select    - target, parameters.value (option value or label)
  wait      - parameters.until (condition) or parameters.seconds, or a target to appear
  extract   - optional target, or parameters.fields mapping names to selectors
  verify    - only checks "expect"

"target" is a short description of the element as a user would see it
(e.g. "Search box", "Submit button") or a selector prefixed with css=, xpath=,
text=, id= or name=.

"expect" is an optional condition that must hold after the step. Clauses are
joined with " and ": {predicates}. value_equals takes <selector>==<value>.

Set "critical": false for steps the objective can succeed without (closing
banners, optional filters).

Respond with ONLY a JSON object:
{{"steps": [{{"description": "...", "action": "...", "target": "... or null",
"parameters": {{}}, "expect": "... or null", "critical": true}}]}}
If the objective is too vague to act on, respond with {{"error": "<why>"}}.
"""

_CREATE_PLAN_PROMPT = """\
Decompose the following objective into at most {max_steps} steps.

{step_format}
Objective: {objective}
Start URL: {start_url}

Current page:
{page}
"""

_REPLAN_PROMPT = """\
A browser automation run needs a new plan for the rest of its objective.

{step_format}
Objective: {objective}

Completed so far:
{progress}

Failure: {failure}

Steps that were planned next (not yet attempted):
{remaining}

Current page:
{page}

Give at most {max_steps} steps that achieve the rest of the objective from the
current page, taking a different approach from the step that failed.
"""


def _extract_json(content: str) -> Any:
    text = content.strip()
    if "```" in text:
        start = text.index("```") + 3
        if text[start:].startswith("json"):
            start += 4
        end = text.index("```", start)
        text = text[start:end].strip()
    return json.loads(text)


def with_start_url(steps: list[Step], start_url: str | None) -> list[Step]:
    """Open ``start_url`` first unless the steps already begin with a navigate.

    Steps are renumbered from 1.
    """
    if start_url and (not steps or steps[0].action is not ActionKind.NAVIGATE):
        steps = [Step(
            id=0,
            description=f"Open {start_url}",
            action=ActionKind.NAVIGATE,
            parameters={"url": start_url},
        )] + steps
    for i, step in enumerate(steps, start=1):
        step.id = i
    return steps


class ObjectivePlanner:
    """Turns objectives into step lists using an LLM. Holds no per-session state."""

    def __init__(self, llm: LLMProvider, max_steps: int = 50, snapshot_token_budget: int = 3000) -> None:
        self._llm = llm
        self._max_steps = max_steps
        self._snapshot_token_budget = snapshot_token_budget

    async def plan(self, objective: Objective, snapshot: PageState | None = None) -> Plan:
        max_steps = objective.max_steps or self._max_steps
        prompt = _CREATE_PLAN_PROMPT.format(
            max_steps=max_steps,
            step_format=self._step_format(),
            objective=objective.text,
            start_url=objective.start_url or "none",
            page=self._describe_page(snapshot),
        )
        content = await self._ask(prompt)
        steps = with_start_url(self._parse_steps(content, max_steps), objective.start_url)[:max_steps]

        plan = Plan(objective=objective, steps=steps)
        log.info("plan_created", plan_id=plan.id, steps=len(steps))
        return plan

    async def replan(
        self,
        objective: Objective,
        plan: Plan,
        cursor: int,
        failure_reason: str,
        snapshot: PageState | None = None,
    ) -> list[Step]:
        """Steps to replace everything after ``cursor``; ids are assigned by the plan."""
        done = [s for s in plan.steps[:cursor + 1] if s.status is not StepStatus.PENDING]
        remaining = plan.steps[cursor + 1:]
        max_steps = max(1, (objective.max_steps or self._max_steps) - len(done))
        prompt = _REPLAN_PROMPT.format(
            step_format=self._step_format(),
            objective=objective.text,
            progress="\n".join(
                f"  {s.id}. [{s.status.value}] {s.action.value}: {s.description}" for s in done
            ) or "  nothing yet",
            failure=failure_reason,
            remaining="\n".join(
                f"  {s.id}. {s.action.value}: {s.description}" for s in remaining
            ) or "  none",
            page=self._describe_page(snapshot),
            max_steps=max_steps,
        )
        content = await self._ask(prompt)
        steps = self._parse_steps(content, max_steps)
        log.info("plan_revised", plan_id=plan.id, cursor=cursor, new_steps=len(steps))
        return steps

    async def _ask(self, prompt: str) -> str:
        try:
            return await self._llm.prompt(prompt, system=_SYSTEM)
        except ProviderError as e:
            raise PlanningError(f"planner LLM call failed: {e}") from e

    def _step_format(self) -> str:
        return _STEP_FORMAT.format(predicates=", ".join(sorted(PREDICATES)))

    def _describe_page(self, snapshot: PageState | None) -> str:
        if snapshot is None:
            return "not loaded yet"
        text = snapshot.summary()
        tokens = self._llm.count_tokens(text)
        if tokens > self._snapshot_token_budget:
            text = text[: int(len(text) * self._snapshot_token_budget / tokens)] + "\n  ..."
        return text

    def _parse_steps(self, content: str, max_steps: int) -> list[Step]:
        try:
            data = _extract_json(content)
        except (json.JSONDecodeError, ValueError) as e:
            log.warning("plan_parse_failed", content=content[:200])
            raise PlanningError(f"planner returned unparseable output: {e}") from e

        if not isinstance(data, dict):
            raise PlanningError("planner output is not a JSON object")
        if data.get("error"):
            raise PlanningError(f"objective cannot be planned: {data['error']}")
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise PlanningError("planner returned no steps")

        return [step_from_dict(raw, i) for i, raw in enumerate(raw_steps[:max_steps], start=1)]


def step_from_dict(raw: Any, index: int) -> Step:
    """Validate one step description (planner output or workflow file)."""
    if not isinstance(raw, dict):
        raise PlanningError(f"step {index} is not an object")
    try:
        action = ActionKind(str(raw.get("action", "")).lower())
    except ValueError as e:
        raise PlanningError(f"step {index} has unknown action {raw.get('action')!r}") from e

    target = raw.get("target")
    if target in ("", "null"):
        target = None
    parameters = raw.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise PlanningError(f"step {index} parameters must be an object")

    if action.needs_target and not target:
        raise PlanningError(f"step {index} ({action.value}) has no target")
    if action in (ActionKind.FILL, ActionKind.SELECT) and parameters.get("value") in (None, ""):
        raise PlanningError(f"step {index} ({action.value}) has no value")
    if action is ActionKind.NAVIGATE and not (parameters.get("url") or target):
        raise PlanningError(f"step {index} (navigate) has no url")
    if action is ActionKind.NAVIGATE and not parameters.get("url"):
        parameters["url"] = target
        target = None

    expect = raw.get("expect")
    if expect in ("", "null"):
        expect = None
    if expect is not None and not is_valid(str(expect)):
        log.warning("plan_condition_dropped", step=index, expect=expect)
        expect = None
    if action is ActionKind.VERIFY and expect is None:
        raise PlanningError(f"step {index} (verify) has no usable condition")

    return Step(
        id=index,
        description=str(raw.get("description") or f"Step {index}"),
        action=action,
        target=str(target) if target is not None else None,
        parameters=parameters,
        expect=str(expect) if expect is not None else None,
        critical=bool(raw.get("critical", True)),
        unique=bool(raw.get("unique", False)),
    )
