"""Load ready-made step lists from YAML workflow files.

A workflow file looks like::

    objective: Search the catalogue for blue shoes
    url: https://shop.example.com
    timeout: 120
    steps:
      - action: fill
        target: Search box
        value: blue shoes
      - action: click
        target: Search button
        expect: url_contains:q=blue
      - action: extract
        fields:
          first_result: css=.result h2

Step keys ``url``, ``value``, ``seconds``, ``until``, ``timeout`` and
``fields`` may be given at the top level of a step or under ``parameters``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from llamaclick.errors import ConfigError
from llamaclick.models import Objective
from llamaclick.planner.engine import step_from_dict, with_start_url
from llamaclick.planner.models import Plan
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

_PARAMETER_KEYS = ("url", "value", "seconds", "until", "timeout", "fields")


def _normalise_step(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    step = dict(raw)
    parameters = dict(step.get("parameters") or {})
    for key in _PARAMETER_KEYS:
        if key in step:
            parameters.setdefault(key, step.pop(key))
    step["parameters"] = parameters
    return step


def parse_workflow(data: Any, source: str = "<workflow>") -> Plan:
    """Build a plan from parsed workflow data. Raises ConfigError or PlanningError."""
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: workflow must be a mapping")
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError(f"{source}: workflow has no steps")

    timeout = data.get("timeout")
    max_steps = data.get("max_steps")
    try:
        objective = Objective(
            text=str(data.get("objective") or data.get("name") or Path(source).stem),
            start_url=data.get("url"),
            timeout_seconds=float(timeout) if timeout is not None else None,
            max_steps=int(max_steps) if max_steps is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{source}: invalid timeout or max_steps: {e}") from e

    steps = [step_from_dict(_normalise_step(raw), i) for i, raw in enumerate(raw_steps, start=1)]
    plan = Plan(objective=objective, steps=with_start_url(steps, objective.start_url))
    log.info("workflow_loaded", source=source, plan_id=plan.id, steps=len(plan.steps))
    return plan


def load_workflow(path: str | Path) -> Plan:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Workflow file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return parse_workflow(data, source=str(path))
